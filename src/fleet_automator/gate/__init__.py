"""
Challenge handling.

Components:
- challenge_gate.py: per-account suspension + one manual surface per account
- manual_surface.py: headed Playwright windows for operator intervention
- detector.py: challenge/ban/login-form classification of a rendered page
"""
