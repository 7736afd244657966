# src/fleet_automator/core/errors.py

"""
Error taxonomy for automation tasks.

Everything here is raised inside a single task and caught at the task boundary
(orchestrator task wrapper). Pool saturation is not an error: work just queues.
"""

from __future__ import annotations

from .models import ChallengeKind


class AutomationError(Exception):
    """Base class for task-level failures."""


class TransientTaskError(AutomationError):
    """Network/navigation failure inside one task; the next loop cycle retries."""


class AuthenticationRejected(AutomationError):
    """The target refused the stored session; escalated to the challenge gate."""


class ChallengeDetected(AutomationError):
    """An anti-automation challenge or ban page was rendered; escalated to the gate."""

    def __init__(self, kind: ChallengeKind, message: str | None = None) -> None:
        self.kind = kind
        super().__init__(message or f"challenge detected: {kind.value}")


class ResourceAcquisitionError(AutomationError):
    """A session host or context could not be created for the task."""
