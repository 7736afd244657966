"""
Scheduling primitives.

Components:
- task_queue.py: priority-ordered, concurrency-limited async executor
- due_times.py: per-account per-capability next-eligible-time table
"""
