"""Authentication API endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Header, status

from ..models.auth import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RegisterRequest,
    RegisterResponse,
    Session,
)
from ..services.auth import AuthError, AuthService, RegistrationError
from ..services.state_store import StateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])

# Singleton instances
_state_store: StateStore = None
_auth_service: AuthService = None


def get_state_store() -> StateStore:
    """Dependency to get the state store instance."""
    global _state_store
    if _state_store is None:
        _state_store = StateStore()
        _state_store.init_schema()
    return _state_store


def get_auth_service(
    state_store: Annotated[StateStore, Depends(get_state_store)]
) -> AuthService:
    """Dependency to get the auth service instance."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService(state_store=state_store)
    return _auth_service


async def get_session_id(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """
    Extract the session token from the Authorization header.

    Expected format: "Bearer <token>"
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authorization header format. Expected: Bearer <token>",
    )


async def require_operator(
    session_id: Annotated[str, Depends(get_session_id)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
) -> Session:
    """Dependency that rejects requests without a valid, unexpired session."""
    session = await auth_service.validate_session(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )
    return session


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(
    request: RegisterRequest,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """
    Register a new operator account.

    Returns 403 when registration is disabled and 409 when the email is taken.
    """
    try:
        operator = await auth_service.register(request)
    except RegistrationError as e:
        logger.warning(f"Registration rejected: {e}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN if e.disabled else status.HTTP_409_CONFLICT,
            detail=str(e),
        )
    return RegisterResponse(email=operator.email)


@router.post("/login", response_model=LoginResponse, response_model_by_alias=True)
async def login(
    login_request: LoginRequest,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """Authenticate an operator and issue a bearer token."""
    try:
        session = await auth_service.login(login_request)
    except AuthError as e:
        logger.warning(f"Authentication failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        )
    return LoginResponse(
        token=session.token,
        expires_at=session.expires_at,
        email=session.user_email,
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    session_id: Annotated[str, Depends(get_session_id)],
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """
    Terminate a session.

    Requires Authorization header with Bearer token.
    """
    success = await auth_service.logout(session_id)
    if not success:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    return LogoutResponse(success=True)
