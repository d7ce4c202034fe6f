import hashlib
import hmac

from fastapi import HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from promptstore.app.core.config import settings
from promptstore.app.core.logging import get_logger
from promptstore.app.db.crud import lookup_user_by_hash
from promptstore.app.db.dependencies import SessionDep
from promptstore.app.exceptions import (
    DemoModeBlockedError,
    StoreUnavailableError,
    UnauthorizedError,
)
from promptstore.app.middleware.request_id import get_request_id

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest under which API keys are stored."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Admin endpoints are disabled entirely while ADMIN_TOKEN is unset.

    Raises:
        UnauthorizedError: If admin token is missing or invalid
    """
    expected_token = settings.admin_token
    if not expected_token:
        logger.warning("ADMIN_TOKEN not configured - admin endpoints disabled")
        raise UnauthorizedError("Invalid or missing admin token")

    token = get_bearer_token(request) or ""

    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(token, expected_token):
        raise UnauthorizedError("Invalid or missing admin token")

    return "admin"


def require_production_mode(request: Request) -> None:
    """Refuse production-only endpoints in a demo deployment.

    Runs ahead of authentication and rate limiting, so a blocked call
    neither hits the users table nor spends a rate-limit slot.

    Raises:
        DemoModeBlockedError: If DEPLOYMENT_MODE is demo
    """
    if settings.deployment_mode == "demo":
        logger.warning(
            f"Demo mode attempted to access production API: {request.url.path}",
            extra={"request_id": get_request_id(request), "path": request.url.path},
        )
        raise DemoModeBlockedError()


async def require_owner(request: Request, session: SessionDep) -> str:
    """Resolve the caller's API key to the owning user's id.

    Args:
        request: The incoming request
        session: Database session injected via SessionDep

    Returns:
        Id of the user the API key belongs to

    Raises:
        UnauthorizedError: If the API key is missing or unknown
        HTTPException: 400 if the API key is too long (DoS protection)
        StoreUnavailableError: If the users table cannot be queried
    """
    token = get_bearer_token(request)
    if not token:
        raise UnauthorizedError()

    # Reject before hashing to avoid CPU exhaustion on huge inputs
    if len(token) > MAX_API_KEY_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"API key too long (max {MAX_API_KEY_LENGTH} characters)",
        )

    try:
        user = await lookup_user_by_hash(session, hash_api_key(token))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"API key lookup failed: {e}")
        raise StoreUnavailableError() from e
    if user is None:
        raise UnauthorizedError()

    return user.id
