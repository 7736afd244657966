# src/fleet_automator/storage/account_store.py

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from ..core.models import Account, CapabilitySettings

logger = logging.getLogger(__name__)


class AccountStore:
    """
    SQLite account store (implements the AccountRepo port).

    Schema handling:
    - create tables if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "accounts.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_accounts()
        except sqlite3.Error:
            total = -1
        logger.info("AccountStore ready db=%s total=%s", self._db_path, total)

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL UNIQUE,
                    password TEXT,
                    proxy TEXT,
                    entry_url TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    paused INTEGER NOT NULL DEFAULT 0,
                    auth_state TEXT,
                    info TEXT NOT NULL DEFAULT '{}',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS capability_settings (
                    account_id INTEGER NOT NULL,
                    capability TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    template TEXT,
                    PRIMARY KEY (account_id, capability)
                )
                """
            )

            # Migrations (safe): add missing columns.
            cur.execute("PRAGMA table_info(accounts)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE accounts ADD COLUMN {name} {decl}")
                logger.info("AccountStore migration: added column %s", name)

            add_col("entry_url", "TEXT")
            add_col("paused", "INTEGER NOT NULL DEFAULT 0")
            add_col("auth_state", "TEXT")
            add_col("info", "TEXT NOT NULL DEFAULT '{}'")
            add_col("updated_at", "REAL NOT NULL DEFAULT 0")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_accounts_state ON accounts(active, paused)")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _json_to_str(value: dict[str, Any] | None) -> str | None:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False)

    @staticmethod
    def _str_to_json(s: str | None) -> dict[str, Any] | None:
        if not s:
            return None
        try:
            val = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("Ignoring undecodable JSON column value")
            return None
        return val if isinstance(val, dict) else None

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=int(row["id"]),
            username=str(row["username"]),
            password=row["password"],
            proxy=row["proxy"] or None,
            entry_url=row["entry_url"] or None,
            active=bool(row["active"]),
            paused=bool(row["paused"]),
            auth_state=self._str_to_json(row["auth_state"]),
            info=self._str_to_json(row["info"]) or {},
        )

    # ---- queries ----

    def count_accounts(self) -> int:
        conn = self._get_conn()
        try:
            (n,) = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()
            return int(n)
        finally:
            conn.close()

    def get_account(self, account_id: int) -> Account | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (int(account_id),)).fetchone()
            return self._row_to_account(row) if row else None
        finally:
            conn.close()

    def get_account_by_username(self, username: str) -> Account | None:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT * FROM accounts WHERE username = ?", (username.strip(),)).fetchone()
            return self._row_to_account(row) if row else None
        finally:
            conn.close()

    def list_accounts(self) -> list[Account]:
        conn = self._get_conn()
        try:
            rows = conn.execute("SELECT * FROM accounts ORDER BY id ASC").fetchall()
            return [self._row_to_account(r) for r in rows]
        finally:
            conn.close()

    def list_eligible_accounts(self) -> list[Account]:
        """Active, not paused accounts in id order."""
        conn = self._get_conn()
        try:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE active = 1 AND paused = 0 ORDER BY id ASC"
            ).fetchall()
            return [self._row_to_account(r) for r in rows]
        finally:
            conn.close()

    def get_capability_settings(self, account_id: int, capability: str) -> CapabilitySettings | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                "SELECT enabled, template FROM capability_settings WHERE account_id = ? AND capability = ?",
                (int(account_id), capability),
            ).fetchone()
            if row is None:
                return None
            return CapabilitySettings(enabled=bool(row["enabled"]), template=row["template"])
        finally:
            conn.close()

    # ---- updates ----

    def add_account(
        self,
        *,
        username: str,
        password: str | None = None,
        proxy: str | None = None,
        entry_url: str | None = None,
        active: bool = True,
        info: dict[str, Any] | None = None,
    ) -> int:
        if not username or not username.strip():
            raise ValueError("username is required")

        now = time.time()
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO accounts(
                    username, password, proxy, entry_url, active, paused,
                    auth_state, info, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 0, NULL, ?, ?, ?)
                """,
                (
                    username.strip(),
                    password,
                    (proxy or "").strip() or None,
                    entry_url,
                    int(bool(active)),
                    self._json_to_str(info or {}),
                    now,
                    now,
                ),
            )
            conn.commit()
            rowid = cur.lastrowid
            if rowid is None:
                raise RuntimeError("SQLite did not return lastrowid for accounts insert")
            account_id = int(rowid)
            logger.debug("Account added id=%s username=%s", account_id, username)
            return account_id
        finally:
            conn.close()

    def update_auth_state(self, account_id: int, state: dict[str, Any] | None) -> None:
        """Store (or with None, invalidate) the persisted session state."""
        self._update(account_id, "auth_state = ?", (self._json_to_str(state),))

    def update_account_info(self, account_id: int, fields: dict[str, Any]) -> None:
        """Merge fields into the account's info document."""
        if not fields:
            return
        account = self.get_account(account_id)
        if account is None:
            logger.warning("update_account_info: account=%s not found", account_id)
            return
        merged = dict(account.info)
        merged.update(fields)
        self._update(account_id, "info = ?", (self._json_to_str(merged),))

    def set_capability_settings(
        self,
        account_id: int,
        capability: str,
        *,
        enabled: bool,
        template: str | None = None,
    ) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                """
                INSERT INTO capability_settings(account_id, capability, enabled, template)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id, capability)
                DO UPDATE SET enabled = excluded.enabled, template = excluded.template
                """,
                (int(account_id), capability, int(bool(enabled)), template),
            )
            conn.commit()
        finally:
            conn.close()

    def set_paused(self, account_id: int, paused: bool) -> None:
        self._update(account_id, "paused = ?", (int(bool(paused)),))

    def deactivate_account(self, account_id: int) -> None:
        self._update(account_id, "active = 0", ())

    def _update(self, account_id: int, assignment: str, params: tuple[Any, ...]) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                f"UPDATE accounts SET {assignment}, updated_at = ? WHERE id = ?",
                (*params, time.time(), int(account_id)),
            )
            conn.commit()
        finally:
            conn.close()
