"""
Session resources.

Components:
- resource_pool.py: one shared host per egress identity, isolated context per task
- playwright_driver.py: Chromium hosts launched through async Playwright
"""
