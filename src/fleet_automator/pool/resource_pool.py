# src/fleet_automator/pool/resource_pool.py

from __future__ import annotations

"""
Keyed pool of shared session hosts with isolated per-task contexts.

One host (browser process) per egress identity (proxy), however many accounts
sit behind it. Every task gets its own context (own cookies/storage), created
from the account's persisted auth state and closed on release. Hosts live until
shutdown_all(), unless found disconnected or recycled:

- after serving max_contexts_per_host contexts a host is retired: it takes no
  new contexts, a fresh host takes over its key, and it is closed as soon as
  its last running context is released.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urlsplit

from ..config import Settings
from ..core.errors import ResourceAcquisitionError
from ..core.models import Account
from ..core.ports import AccountRepo, HostHandle, HostLauncher, SessionContext
from ..core.timing import capped_backoff

logger = logging.getLogger(__name__)

DIRECT_KEY = "direct"
# Consecutive launch failures from which the condition is logged at ERROR.
_OPERATOR_VISIBLE_FAILURES = 3


def resource_key_for(account: Account) -> str:
    proxy = (account.proxy or "").strip()
    if not proxy:
        return DIRECT_KEY
    if "://" not in proxy:
        proxy = "http://" + proxy
    # Credentials are case-sensitive; only scheme and host are normalized.
    scheme, _, rest = proxy.partition("://")
    userinfo, at, hostport = rest.rpartition("@")
    return f"{scheme.lower()}://{userinfo}{at}{hostport.lower()}"


def parse_proxy(proxy: str | None) -> dict[str, str] | None:
    """
    Convert "user:pass@host:port" / "http://host:port" into Playwright's proxy dict.
    """
    raw = (proxy or "").strip()
    if not raw:
        return None
    if not raw.startswith(("http://", "https://", "socks5://")):
        raw = "http://" + raw

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ResourceAcquisitionError(f"Invalid proxy format: {proxy!r}") from e

    if not parts.hostname or port is None:
        raise ResourceAcquisitionError(f"Invalid proxy format: {proxy!r}")

    out = {"server": f"{parts.scheme}://{parts.hostname}:{port}"}
    if parts.username and parts.password:
        out["username"] = parts.username
        out["password"] = parts.password
    return out


@dataclass(slots=True, eq=False)
class SessionHost:
    key: str
    handle: HostHandle
    created_at: float
    active_contexts: set[SessionContext] = field(default_factory=set)
    contexts_served: int = 0
    retired: bool = False


@dataclass(slots=True, frozen=True)
class SessionLease:
    host: SessionHost
    context: SessionContext
    account: Account
    resource_key: str


@dataclass(slots=True, frozen=True)
class PoolStats:
    host_count: int
    active_context_count: int


class ResourcePool:
    def __init__(
            self,
            repo: AccountRepo,
            launcher: HostLauncher,
            settings: Settings | None = None,
            *,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repo = repo
        self._launcher = launcher
        self._settings = settings or Settings()
        self._clock = clock

        self._hosts: dict[str, SessionHost] = {}
        # Retired hosts still finishing their running contexts.
        self._draining: list[SessionHost] = []
        self._creation_locks: dict[str, asyncio.Lock] = {}
        self._failures: dict[str, int] = {}
        self._retry_at: dict[str, float] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # ---- acquire / release ----

    async def acquire_context(self, account_id: int) -> SessionLease:
        if self._closed:
            raise ResourceAcquisitionError("Resource pool is shut down")
        account = self._repo.get_account(account_id)
        if account is None:
            raise ResourceAcquisitionError(f"Account {account_id} not found")

        key = resource_key_for(account)
        host = await self._get_host(key, account.proxy)

        options: dict[str, Any] = dict(self._settings.context_options())
        if account.auth_state:
            options["storage_state"] = account.auth_state

        try:
            context = await host.handle.new_context(**options)
        except Exception as e:
            raise ResourceAcquisitionError(
                f"Context creation failed for account {account_id} on {key}: {e!r}"
            ) from e

        if self._closed:
            # shutdown_all() ran while the context was being created.
            try:
                await context.close()
            except Exception as e:
                logger.warning("Context close failed key=%s: %r", key, e)
            raise ResourceAcquisitionError("Resource pool is shut down")

        host.active_contexts.add(context)
        host.contexts_served += 1
        if 0 < self._settings.max_contexts_per_host <= host.contexts_served:
            host.retired = True

        logger.debug(
            "Context opened account=%s key=%s active=%d",
            account_id,
            key,
            len(host.active_contexts),
        )
        return SessionLease(host=host, context=context, account=account, resource_key=key)

    async def release_context(self, context: SessionContext | None, resource_key: str) -> None:
        """Close a task context; the host stays alive. Never raises."""
        if context is None:
            return
        try:
            await context.close()
        except Exception as e:
            logger.warning("Context close failed key=%s: %r", resource_key, e)
        finally:
            host = self._hosts.get(resource_key)
            if host is not None:
                host.active_contexts.discard(context)
            for old in list(self._draining):
                if context in old.active_contexts:
                    old.active_contexts.discard(context)
                    if not old.active_contexts:
                        self._draining.remove(old)
                        await self._close_host(old)

    async def persist_auth_state(self, context: SessionContext, account_id: int) -> bool:
        """
        Write the context's current auth state through the repo.

        Called selectively (after a verified login), never at shutdown. Only
        writes when the cookie jar differs from the stored one.
        """
        try:
            state = await context.storage_state()
        except Exception as e:
            logger.error("Reading auth state failed account=%s: %r", account_id, e)
            return False

        if not state or not state.get("cookies"):
            logger.warning("No cookies to persist for account=%s", account_id)
            return False

        stored = self._repo.get_account(account_id)
        if stored is not None and _cookie_jar(stored.auth_state) == _cookie_jar(state):
            logger.debug("Auth state unchanged account=%s; not rewritten", account_id)
            return False

        try:
            self._repo.update_auth_state(account_id, state)
        except Exception:
            logger.exception("update_auth_state failed account=%s", account_id)
            return False

        logger.debug("Auth state persisted account=%s", account_id)
        return True

    # ---- hosts ----

    async def _get_host(self, key: str, proxy: str | None) -> SessionHost:
        host = self._hosts.get(key)
        if host is not None and self._host_usable(key, host):
            return host

        # Registered before the first await: concurrent first users share it.
        lock = self._creation_locks.setdefault(key, asyncio.Lock())
        async with lock:
            if self._closed:
                raise ResourceAcquisitionError("Resource pool is shut down")
            host = self._hosts.get(key)
            if host is not None:
                if self._host_usable(key, host):
                    return host
                await self._retire_host(key, host)

            retry_at = self._retry_at.get(key)
            if retry_at is not None and self._clock() < retry_at:
                raise ResourceAcquisitionError(
                    f"Host for {key} is backing off ({retry_at - self._clock():.0f}s left)"
                )

            proxy_opts = parse_proxy(proxy)
            try:
                handle = await self._launcher.launch(key, proxy_opts)
            except Exception as e:
                self._record_failure(key, e)
                raise ResourceAcquisitionError(f"Host launch failed for {key}: {e!r}") from e

            self._failures.pop(key, None)
            self._retry_at.pop(key, None)
            host = SessionHost(key=key, handle=handle, created_at=self._clock())
            if self._closed:
                logger.info("Session host key=%s launched after shutdown; closing it", key)
                await self._close_host(host)
                raise ResourceAcquisitionError("Resource pool is shut down")
            self._hosts[key] = host
            logger.info("Session host created key=%s (hosts=%d)", key, len(self._hosts))
            return host

    @staticmethod
    def _host_usable(key: str, host: SessionHost) -> bool:
        if not _is_connected(host.handle):
            logger.warning("Session host key=%s disconnected; relaunching", key)
            return False
        return not host.retired

    async def _retire_host(self, key: str, host: SessionHost) -> None:
        self._hosts.pop(key, None)
        if host.active_contexts and _is_connected(host.handle):
            # Running contexts finish on it; closed by the last release.
            self._draining.append(host)
            logger.info(
                "Session host retired key=%s after %d contexts (%d still running)",
                key,
                host.contexts_served,
                len(host.active_contexts),
            )
            return
        host.active_contexts.clear()
        await self._close_host(host)

    async def _close_host(self, host: SessionHost) -> None:
        try:
            await host.handle.close()
            logger.info("Session host closed key=%s after %d contexts", host.key, host.contexts_served)
        except Exception as e:
            logger.warning("Host close failed key=%s: %r", host.key, e)

    def _record_failure(self, key: str, exc: Exception) -> None:
        n = self._failures.get(key, 0) + 1
        self._failures[key] = n
        delay = capped_backoff(
            n,
            base_seconds=self._settings.host_backoff_base_seconds,
            cap_seconds=self._settings.host_backoff_cap_seconds,
        )
        self._retry_at[key] = self._clock() + delay
        if n >= _OPERATOR_VISIBLE_FAILURES:
            logger.error(
                "Host launch for %s failed %d times in a row (next try in %.0fs): %r",
                key, n, delay, exc,
            )
        else:
            logger.warning("Host launch for %s failed (retry in %.0fs): %r", key, delay, exc)

    # ---- stats / shutdown ----

    def stats(self) -> PoolStats:
        hosts = [*self._hosts.values(), *self._draining]
        return PoolStats(
            host_count=len(hosts),
            active_context_count=sum(len(h.active_contexts) for h in hosts),
        )

    async def shutdown_all(self) -> None:
        """
        Close every context, then every host, then the driver. Process shutdown only.

        The pool stays closed: later acquires fail, and a launch still in flight
        closes its host instead of registering it.
        """
        self._closed = True
        hosts = [*self._hosts.values(), *self._draining]
        self._hosts.clear()
        self._draining.clear()

        for host in hosts:
            for ctx in list(host.active_contexts):
                try:
                    await ctx.close()
                except Exception as e:
                    logger.warning("Context close failed during shutdown key=%s: %r", host.key, e)
            host.active_contexts.clear()
            await self._close_host(host)

        try:
            await self._launcher.stop()
        except Exception as e:
            logger.warning("Launcher stop failed: %r", e)


def _cookie_jar(state: dict[str, Any] | None) -> frozenset[tuple[Any, ...]]:
    # Expiry is refreshed on most responses; it does not make a new session.
    cookies = (state or {}).get("cookies") or []
    return frozenset(
        (c.get("name"), c.get("value"), c.get("domain"), c.get("path"))
        for c in cookies
        if isinstance(c, dict)
    )


def _is_connected(handle: HostHandle) -> bool:
    check = getattr(handle, "is_connected", None)
    if not callable(check):
        return True
    try:
        return bool(check())
    except Exception:
        return False
