"""永続化ストアで利用するレコードモデル群。"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    """UTC 現在時刻を返す。"""
    return datetime.now(timezone.utc)


class OperatorRecord(BaseModel):
    """コンソールを操作するオペレーターアカウント。"""

    email: str
    first_name: str
    last_name: str
    password_hash: str
    created_at: datetime = Field(default_factory=_now_utc)


class AuthSessionRecord(BaseModel):
    """ログインセッションの永続化レコード。"""

    token: str
    user_email: str
    created_at: datetime = Field(default_factory=_now_utc)
    expires_at: datetime
    last_activity: datetime


class AuditLogEntry(BaseModel):
    """監査ログエントリ。"""

    id: Optional[int] = None
    category: str
    action: str
    actor: str
    target: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now_utc)


class AuditLogResponse(BaseModel):
    """監査ログ一覧のレスポンス。"""

    entries: List[AuditLogEntry] = Field(default_factory=list)
