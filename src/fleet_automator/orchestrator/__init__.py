"""
Orchestration.

Components:
- loops.py: one polling loop per capability feeding the shared task queue
- shutdown.py: ordered, bounded shutdown of loops, queue, pool and surfaces
"""
