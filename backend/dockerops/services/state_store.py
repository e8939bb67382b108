"""オペレーター・ログインセッション・監査ログを保持する SQLite ストア。"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..config import settings
from ..models.state import AuditLogEntry, AuthSessionRecord, OperatorRecord

logger = logging.getLogger(__name__)

# 監査ログに平文で残さないメタデータキー (部分一致)
_SENSITIVE_KEY_PARTS = ("token", "password", "secret", "private_key")
_REDACTED = "***redacted***"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS operators (
    email TEXT PRIMARY KEY,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS auth_sessions (
    token TEXT PRIMARY KEY,
    user_email TEXT NOT NULL REFERENCES operators(email) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    last_activity TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_auth_sessions_expires_at ON auth_sessions(expires_at);
CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    action TEXT NOT NULL,
    actor TEXT NOT NULL,
    target TEXT NOT NULL,
    metadata TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_audit_logs_target ON audit_logs(target);
"""


def _utc_iso(value: datetime) -> str:
    """naive な値は UTC とみなし、UTC の ISO8601 文字列にする。"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _session_from_row(row: sqlite3.Row) -> AuthSessionRecord:
    return AuthSessionRecord(
        token=row["token"],
        user_email=row["user_email"],
        created_at=_parse_iso(row["created_at"]),
        expires_at=_parse_iso(row["expires_at"]),
        last_activity=_parse_iso(row["last_activity"]),
    )


def _audit_from_row(row: sqlite3.Row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        category=row["category"],
        action=row["action"],
        actor=row["actor"],
        target=row["target"],
        metadata=json.loads(row["metadata"]),
        created_at=_parse_iso(row["created_at"]),
    )


class StateStore:
    """
    Persistence for the console's own state.

    The Docker daemon is the source of truth for containers; this store only
    keeps who may operate them (operators, login sessions) and what they did
    (audit log). One short-lived connection per call keeps the store usable
    from executor threads.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or settings.state_db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self) -> None:
        """Create tables and indexes; safe to call repeatedly."""
        if self._schema_ready:
            return
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        self._schema_ready = True

    def list_tables(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        return [row["name"] for row in rows]

    # Operators

    def create_operator(self, record: OperatorRecord) -> bool:
        """
        Insert an operator account.

        Returns:
            False when an operator with the same email already exists
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO operators (email, first_name, last_name, password_hash, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        record.email,
                        record.first_name,
                        record.last_name,
                        record.password_hash,
                        _utc_iso(record.created_at),
                    ),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def get_operator(self, email: str) -> Optional[OperatorRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM operators WHERE email=?", (email,)).fetchone()
        if row is None:
            return None
        return OperatorRecord(
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            password_hash=row["password_hash"],
            created_at=_parse_iso(row["created_at"]),
        )

    # Login sessions

    def save_auth_session(self, record: AuthSessionRecord) -> None:
        """Insert or overwrite a login session (keyed by token)."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO auth_sessions "
                "(token, user_email, created_at, expires_at, last_activity) VALUES (?, ?, ?, ?, ?)",
                (
                    record.token,
                    record.user_email,
                    _utc_iso(record.created_at),
                    _utc_iso(record.expires_at),
                    _utc_iso(record.last_activity),
                ),
            )

    def get_auth_session(self, token: str) -> Optional[AuthSessionRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_sessions WHERE token=?", (token,)).fetchone()
        return _session_from_row(row) if row is not None else None

    def delete_auth_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_sessions WHERE token=?", (token,))

    # Audit log

    def record_audit_log(
        self,
        category: str,
        action: str,
        actor: str,
        target: str,
        metadata: Dict[str, object],
        created_at: Optional[datetime] = None,
    ) -> None:
        """Append an audit entry; sensitive metadata values are masked."""
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_logs (category, action, actor, target, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    category,
                    action,
                    actor,
                    target,
                    json.dumps(self._mask_sensitive(metadata)),
                    _utc_iso(created_at or datetime.now(timezone.utc)),
                ),
            )

    def get_recent_audit_logs(self, limit: int = 20, target: Optional[str] = None) -> List[AuditLogEntry]:
        """
        Newest audit entries first.

        Args:
            limit: Maximum number of entries
            target: Only entries for this container id (or name) when given
        """
        query = "SELECT * FROM audit_logs"
        params: list = []
        if target is not None:
            query += " WHERE target=?"
            params.append(target)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_audit_from_row(row) for row in rows]

    # Housekeeping

    def gc_expired(
        self,
        now: Optional[datetime] = None,
        audit_retention: Optional[timedelta] = None,
    ) -> Dict[str, int]:
        """
        Delete expired login sessions and, when ``audit_retention`` is given,
        audit entries older than it.

        Returns:
            Number of deleted rows per table
        """
        now = now or datetime.now(timezone.utc)
        deleted = {"auth_sessions": 0, "audit_logs": 0}
        with self._connect() as conn:
            deleted["auth_sessions"] = conn.execute(
                "DELETE FROM auth_sessions WHERE expires_at < ?", (_utc_iso(now),)
            ).rowcount
            if audit_retention is not None:
                deleted["audit_logs"] = conn.execute(
                    "DELETE FROM audit_logs WHERE created_at < ?",
                    (_utc_iso(now - audit_retention),),
                ).rowcount

        if any(deleted.values()):
            logger.info(
                "期限切れデータを削除しました (sessions=%d, audit_logs=%d)",
                deleted["auth_sessions"],
                deleted["audit_logs"],
            )
        return deleted

    @staticmethod
    def _mask_sensitive(metadata: Dict[str, object]) -> Dict[str, object]:
        return {
            key: _REDACTED if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS) else value
            for key, value in metadata.items()
        }
