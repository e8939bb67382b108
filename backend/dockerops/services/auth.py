"""Authentication Service for console operators."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ..config import settings
from ..models.auth import LoginRequest, RegisterRequest, Session
from ..models.state import AuthSessionRecord, OperatorRecord
from .state_store import StateStore

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()


class AuthError(Exception):
    """Custom exception for authentication errors."""
    pass


class RegistrationError(Exception):
    """オペレーター登録に失敗した場合の例外。"""

    def __init__(self, message: str, *, disabled: bool = False) -> None:
        self.disabled = disabled
        super().__init__(message)


def hash_password(password: str) -> str:
    """Hash a password using Argon2id."""
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Check a password against a hash produced by :func:`hash_password`."""
    try:
        _hasher.verify(password_hash, password)
        return True
    except VerifyMismatchError:
        return False
    except (InvalidHashError, VerificationError):
        logger.warning("パスワードハッシュの形式が不正です")
        return False


class AuthService:
    """
    Manages operator accounts and the bearer sessions they log in with.

    Responsibilities:
    - Register operators (email + Argon2id password hash)
    - Authenticate operators and issue session tokens
    - Validate and expire sessions
    """

    def __init__(self, state_store: Optional[StateStore] = None):
        """
        Initialize the Auth Service.

        Args:
            state_store: 永続化用の StateStore。未指定ならデフォルトパスを利用。
        """
        self._state_store = state_store or StateStore()
        self._state_store.init_schema()
        self._session_timeout = timedelta(minutes=settings.session_timeout_minutes)

    async def register(self, request: RegisterRequest) -> OperatorRecord:
        """
        Register a new operator.

        Raises:
            RegistrationError: If registration is disabled or the email is taken
        """
        if not settings.allow_registration:
            raise RegistrationError("Registration is disabled", disabled=True)

        email = request.email.strip().lower()
        record = OperatorRecord(
            email=email,
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            password_hash=hash_password(request.password),
        )
        if not self._state_store.create_operator(record):
            raise RegistrationError(f"Operator {email} already exists")

        logger.info("Operator registered: %s", email)
        return record

    async def login(self, login_request: LoginRequest) -> Session:
        """
        Authenticate an operator and create a session.

        Raises:
            AuthError: If the email is unknown or the password does not match
        """
        email = login_request.email.strip().lower()
        operator = self._state_store.get_operator(email)
        # 存在しないユーザーでも同じメッセージを返す
        if operator is None or not verify_password(operator.password_hash, login_request.password):
            logger.warning("Login failed for %s", email)
            raise AuthError("Invalid email or password")

        now = datetime.now(timezone.utc)
        session = Session(
            token=secrets.token_urlsafe(32),
            user_email=email,
            created_at=now,
            expires_at=now + self._session_timeout,
            last_activity=now,
        )
        self._state_store.save_auth_session(
            AuthSessionRecord(**session.model_dump())
        )
        logger.info("Session created for operator %s", email)
        return session

    async def logout(self, token: str) -> bool:
        """
        Terminate a session.

        Returns:
            True if the session was terminated, False if it did not exist
        """
        if self._state_store.get_auth_session(token) is None:
            logger.warning("Logout attempted for non-existent session")
            return False
        self._state_store.delete_auth_session(token)
        return True

    async def validate_session(self, token: str) -> Optional[Session]:
        """
        Return the session for a token if it is valid and not expired.

        Expired sessions are deleted. Valid sessions get their last activity
        refreshed.
        """
        record = self._state_store.get_auth_session(token)
        if record is None:
            return None

        now = datetime.now(timezone.utc)
        if now >= self._to_utc(record.expires_at):
            logger.info("Session expired for operator %s", record.user_email)
            self._state_store.delete_auth_session(token)
            return None

        record.last_activity = now
        self._state_store.save_auth_session(record)
        return Session(**record.model_dump())

    async def cleanup_expired_sessions(self) -> int:
        """期限切れセッションを削除し、削除件数を返す。"""
        return self._state_store.gc_expired()["auth_sessions"]

    def _to_utc(self, value: datetime) -> datetime:
        """タイムゾーンの有無を問わず UTC の datetime に正規化する。"""
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
