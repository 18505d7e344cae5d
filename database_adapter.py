#!/usr/bin/env python3
"""
Database Adapter for PostgreSQL/SQLite
Owns the members table (one row per Telegram user) and the job lease table
used to keep reconciliation runs from overlapping across processes.
"""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Persistence layer failure; fatal to the current operation."""


@dataclass(frozen=True)
class MemberRecord:
    user_id: int
    display_name: Optional[str]
    entitlement_code: str
    enrolled_at: int

    @property
    def enrolled_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.enrolled_at, tz=timezone.utc)


class DatabaseAdapter:
    """Credential store backed by SQLite, or PostgreSQL when a postgres URL is given."""

    def __init__(self, database_url: Optional[str] = None, sqlite_path: str = "members.db",
                 clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.RLock()
        self.is_postgres = bool(database_url and database_url.startswith("postgres"))

        if self.is_postgres:
            import psycopg2
            try:
                self.connection = psycopg2.connect(database_url)
            except psycopg2.Error as e:
                raise StorageError(f"PostgreSQL connection failed: {e}") from e
            self._db_errors = (psycopg2.Error,)
            self._integrity_error = psycopg2.IntegrityError
            self._param = "%s"
            logger.info("✅ Connected to PostgreSQL database")
        else:
            try:
                self.connection = sqlite3.connect(sqlite_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise StorageError(f"SQLite open failed for {sqlite_path}: {e}") from e
            self._db_errors = (sqlite3.Error,)
            self._integrity_error = sqlite3.IntegrityError
            self._param = "?"
            logger.info(f"✅ Connected to SQLite database: {sqlite_path}")

        self._create_tables()

    def _sql(self, statement: str) -> str:
        return statement.replace("?", self._param)

    def _execute(self, statement: str, params=(), fetch: bool = False):
        with self._lock:
            try:
                cursor = self.connection.cursor()
            except self._db_errors as e:
                raise StorageError(str(e)) from e
            try:
                cursor.execute(self._sql(statement), params)
                rows = cursor.fetchall() if fetch else None
                self.connection.commit()
                return rows, cursor.rowcount
            except self._db_errors as e:
                self._rollback()
                raise StorageError(str(e)) from e
            finally:
                cursor.close()

    def _rollback(self):
        try:
            self.connection.rollback()
        except self._db_errors as e:
            logger.error(f"Rollback failed: {e}")

    def _create_tables(self):
        """Create all required tables"""
        self._execute("""
            CREATE TABLE IF NOT EXISTS members (
                user_id BIGINT PRIMARY KEY,
                display_name TEXT,
                code TEXT NOT NULL,
                enrolled_at BIGINT NOT NULL
            )
        """)
        self._execute("""
            CREATE TABLE IF NOT EXISTS job_leases (
                name TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                expires_at BIGINT NOT NULL
            )
        """)
        logger.info("✅ Database tables created/verified")

    # ---------------------------------------------
    # Members
    # ---------------------------------------------
    def upsert_member(self, user_id: int, display_name: Optional[str], code: str) -> MemberRecord:
        """Insert or replace the record for user_id; re-enrollment resets enrolled_at."""
        if not code:
            raise ValueError("entitlement code must not be empty")
        enrolled_at = int(self.clock())
        self._execute("""
            INSERT INTO members (user_id, display_name, code, enrolled_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (user_id)
            DO UPDATE SET
                display_name = excluded.display_name,
                code = excluded.code,
                enrolled_at = excluded.enrolled_at
        """, (user_id, display_name, code, enrolled_at))
        return MemberRecord(user_id, display_name, code, enrolled_at)

    def get_member(self, user_id: int) -> Optional[MemberRecord]:
        rows, _ = self._execute(
            "SELECT user_id, display_name, code, enrolled_at FROM members WHERE user_id = ?",
            (user_id,), fetch=True,
        )
        return MemberRecord(*rows[0]) if rows else None

    def list_members(self) -> List[MemberRecord]:
        """All records, oldest enrollment first."""
        rows, _ = self._execute(
            "SELECT user_id, display_name, code, enrolled_at FROM members "
            "ORDER BY enrolled_at ASC, user_id ASC",
            fetch=True,
        )
        return [MemberRecord(*row) for row in rows]

    def delete_member(self, user_id: int, code: Optional[str] = None) -> bool:
        """Delete a record; when code is given only if it still holds that code."""
        if code is None:
            _, count = self._execute("DELETE FROM members WHERE user_id = ?", (user_id,))
        else:
            _, count = self._execute(
                "DELETE FROM members WHERE user_id = ? AND code = ?", (user_id, code)
            )
        return count > 0

    # ---------------------------------------------
    # Job leases
    # ---------------------------------------------
    def acquire_lease(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """Take the named lease unless another live holder has it."""
        now = int(self.clock())
        with self._lock:
            self._execute("DELETE FROM job_leases WHERE name = ? AND expires_at <= ?", (name, now))
            try:
                self._execute(
                    "INSERT INTO job_leases (name, holder, expires_at) VALUES (?, ?, ?)",
                    (name, holder, now + ttl_seconds),
                )
            except StorageError as e:
                if isinstance(e.__cause__, self._integrity_error):
                    return False
                raise
        return True

    def release_lease(self, name: str, holder: str):
        self._execute("DELETE FROM job_leases WHERE name = ? AND holder = ?", (name, holder))

    def close(self):
        """Close database connection"""
        if self.connection:
            self.connection.close()
            logger.info("✅ Database connection closed")


def open_store(settings) -> DatabaseAdapter:
    """Store for the configured backend."""
    return DatabaseAdapter(database_url=settings.database_url, sqlite_path=settings.sqlite_path)
