import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dockerops import __version__
from dockerops.api import auth, containers
from dockerops.config import settings
from dockerops.services.auth import AuthError
from dockerops.services.errors import (
    ContainerConflictError,
    ContainerError,
    ContainerNotFoundError,
    CredentialError,
    DaemonConnectionError,
    DaemonUnreachableError,
    DecodeError,
    NetworkInterfaceNotFoundError,
    UpdatePhaseError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# (status, error_code, detail). サブクラスを先に並べること
_CONTAINER_ERROR_RESPONSES = [
    (
        CredentialError,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "CREDENTIAL_ERROR",
        "TLS client credentials are missing or invalid. Check CERT_PATH.",
    ),
    (
        DaemonConnectionError,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DAEMON_CONNECTION_ERROR",
        "Could not establish a session with the Docker daemon.",
    ),
    (
        DaemonUnreachableError,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "DAEMON_UNREACHABLE",
        "The Docker daemon did not answer. It may be down or unreachable.",
    ),
    (
        ContainerNotFoundError,
        status.HTTP_404_NOT_FOUND,
        "CONTAINER_NOT_FOUND",
        "The container does not exist on the Docker daemon.",
    ),
    (
        ContainerConflictError,
        status.HTTP_409_CONFLICT,
        "CONTAINER_CONFLICT",
        "The operation conflicts with the current state of the container.",
    ),
    (
        NetworkInterfaceNotFoundError,
        status.HTTP_502_BAD_GATEWAY,
        "NETWORK_INTERFACE_NOT_FOUND",
        "The stats snapshot does not contain the configured network interface.",
    ),
    (
        DecodeError,
        status.HTTP_502_BAD_GATEWAY,
        "DECODE_ERROR",
        "The Docker daemon returned a response that could not be decoded.",
    ),
]


def container_error_response(exc: ContainerError) -> tuple[int, str, str]:
    """Map a ContainerError onto (HTTP status, error_code, detail)."""
    for error_type, status_code, error_code, detail in _CONTAINER_ERROR_RESPONSES:
        if isinstance(exc, error_type):
            return status_code, error_code, detail
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "CONTAINER_ERROR",
        "Container operation failed. Please check the container status and Docker daemon connection.",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    The Docker session is opened here and owned by ``app.state``; when the
    daemon cannot be reached at startup the API still starts and the first
    request retries the connection.
    """
    logger.info("Starting Docker Remote Operations API")
    auth.get_state_store().gc_expired(
        audit_retention=timedelta(days=settings.audit_log_retention_days)
    )
    app.state.container_service = None
    app.state.container_connect_lock = asyncio.Lock()
    if settings.docker_connect_on_startup:
        loop = asyncio.get_running_loop()
        try:
            app.state.container_service = await loop.run_in_executor(
                None, containers.create_container_service
            )
        except ContainerError as e:
            logger.error(f"Docker daemon connection failed at startup: {e}")
    yield
    service = getattr(app.state, "container_service", None)
    if service is not None:
        service.close()
        app.state.container_service = None
    logger.info("Shutting down Docker Remote Operations API")


app = FastAPI(
    title="Docker Remote Operations API",
    description="Backend API for operating containers on a remote Docker daemon over mutual TLS",
    version=__version__,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router, prefix="/api")
app.include_router(containers.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Docker Remote Operations API",
        "version": __version__,
        "status": "running",
    }


@app.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    connected = getattr(request.app.state, "container_service", None) is not None
    return {"status": "healthy", "docker": "connected" if connected else "disconnected"}


# Global exception handlers


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    """Handle authentication errors."""
    logger.warning(f"Authentication error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={
            "error_code": "AUTH_ERROR",
            "message": str(exc),
            "detail": "Authentication failed. Please check your credentials and try again.",
        },
    )


@app.exception_handler(UpdatePhaseError)
async def update_phase_error_handler(request: Request, exc: UpdatePhaseError):
    """
    Handle recreate workflow failures.

    The HTTP status follows the underlying cause; ``phase`` and
    ``new_container_id`` tell the operator what is left on the daemon.
    """
    logger.error(f"Container update failed: {exc}")
    if exc.cause is not None:
        status_code, _, _ = container_error_response(exc.cause)
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": "UPDATE_FAILED",
            "message": str(exc),
            "detail": "Container update did not complete. Check the reported phase before retrying.",
            "phase": exc.phase,
            "new_container_id": exc.new_container_id,
        },
    )


@app.exception_handler(ContainerError)
async def container_error_handler(request: Request, exc: ContainerError):
    """Handle container operation errors."""
    status_code, error_code, detail = container_error_response(exc)
    if status_code >= 500:
        logger.error(f"Container error: {exc}")
    else:
        logger.warning(f"Container error: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": str(exc),
            "detail": detail,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    logger.warning(f"Validation error: {exc}")
    errors = exc.errors()
    error_messages = []

    for error in errors:
        field = " -> ".join(str(loc) for loc in error["loc"])
        message = error["msg"]
        error_messages.append(f"{field}: {message}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "detail": "; ".join(error_messages),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """
    Handle all other unexpected exceptions.

    Logs detailed error information while returning a user-friendly message.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "detail": "The server encountered an unexpected error. Please try again later or contact support if the problem persists.",
        },
    )
