"""
Capability bodies.

Components:
- session_check.py: built-in check that an account's stored session is still valid
- registry.py: built-ins + capabilities installed through entry points
"""
