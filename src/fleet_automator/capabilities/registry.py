# src/fleet_automator/capabilities/registry.py

from __future__ import annotations

"""
Capability registry.

Built-in capabilities are constructed here; additional ones come from installed
distributions through the `fleet_automator.capabilities` entry-point group. An
entry point may point at a CapabilitySpec or at a zero-argument factory
returning one. Broken plugins are logged and skipped.
"""

import logging
from importlib.metadata import EntryPoint, entry_points
from typing import Iterable

from ..config import Settings
from ..core.ports import AccountRepo, ChallengeDetector
from ..orchestrator.loops import CapabilitySpec
from . import session_check

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "fleet_automator.capabilities"


def builtin_capabilities(
        repo: AccountRepo,
        detector: ChallengeDetector,
        settings: Settings,
) -> list[CapabilitySpec]:
    check = session_check.SessionCheck(
        repo,
        detector,
        navigation_timeout_seconds=settings.navigation_timeout_seconds,
    )
    return [
        CapabilitySpec(
            name=session_check.NAME,
            body=check,
            priority=session_check.PRIORITY,
            interval_seconds=session_check.INTERVAL_SECONDS,
            default_next_due_seconds=session_check.CHECK_EVERY_SECONDS,
            requires_settings=False,
            persist_auth_on_success=True,
        )
    ]


def _spec_from_entry_point(ep: EntryPoint) -> CapabilitySpec | None:
    try:
        obj = ep.load()
        if not isinstance(obj, CapabilitySpec) and callable(obj):
            obj = obj()
    except Exception:
        logger.exception("Loading capability plugin %r failed", ep.name)
        return None

    if not isinstance(obj, CapabilitySpec):
        logger.warning("Capability plugin %r did not provide a CapabilitySpec (got %r)", ep.name, type(obj))
        return None
    return obj


def load_plugin_capabilities(group: str = ENTRY_POINT_GROUP) -> list[CapabilitySpec]:
    specs: list[CapabilitySpec] = []
    for ep in entry_points(group=group):
        spec = _spec_from_entry_point(ep)
        if spec is not None:
            logger.info("Capability plugin loaded: %s (priority=%d)", spec.name, spec.priority)
            specs.append(spec)
    return specs


def merge_capabilities(*groups: Iterable[CapabilitySpec]) -> list[CapabilitySpec]:
    """First definition of a name wins; the result is ordered by priority."""
    seen: dict[str, CapabilitySpec] = {}
    for group in groups:
        for spec in group:
            if spec.name in seen:
                logger.warning("Duplicate capability %r ignored", spec.name)
                continue
            seen[spec.name] = spec
    return sorted(seen.values(), key=lambda s: s.priority)


def load_capabilities(
        repo: AccountRepo,
        detector: ChallengeDetector,
        settings: Settings,
) -> list[CapabilitySpec]:
    return merge_capabilities(
        builtin_capabilities(repo, detector, settings),
        load_plugin_capabilities(),
    )
