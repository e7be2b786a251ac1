# app/transport/security.py
"""
Security utilities for the task API.

- Constant-time Bearer token comparison against ``api_token``
- Weak token detection at startup
- Principal extraction from trusted upstream headers
- Security headers and error message sanitization
"""
import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.dispatch.domain import Principal
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

ALLOWED_ROLES = {"user", "admin", "super_admin"}

bearer_scheme = HTTPBearer(
    scheme_name="API Token",
    description="Enter the API token (without 'Bearer ' prefix)",
    auto_error=False,  # We handle errors ourselves for better messages
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Returns list of warnings (empty if token is strong)."""
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    lowered = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in lowered:
            warnings.append(f"{token_name} contains weak pattern '{pattern}'")
            break

    if len(set(token)) < 10:
        warnings.append(f"{token_name} has low character variety")

    return warnings


def check_configured_tokens() -> None:
    """Log warnings for weak tokens. Called once at startup."""
    if not settings.api_token:
        return
    for warning in validate_token_strength(settings.api_token, "API_TOKEN"):
        if settings.is_production:
            logger.error(f"SECURITY: {warning}")
        else:
            logger.warning(f"SECURITY: {warning}")


async def require_api_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Bearer token check for every task route.

    With no ``api_token`` configured the check is skipped outside
    production (config warns about it at startup).
    """
    if not settings.api_token:
        if settings.is_production:
            logger.critical("API_TOKEN not configured but task endpoint accessed")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Service unavailable",
            )
        return

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials, settings.api_token):
        logger.warning(f"Invalid API token for {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
    x_user_nickname: str | None = Header(default=None),
) -> Principal:
    """
    Principal set by the authenticating gateway in front of this service.

    Session handling lives upstream; this service trusts the headers once
    the API token has been checked.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")

    role = (x_user_role or "user").strip().lower()
    if role not in ALLOWED_ROLES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role '{role}'")

    return Principal(id=user_id, role=role, nickname=x_user_nickname or None)


class SecurityHeaders:
    """OWASP recommended response headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Endpoints can override
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    error_type = type(error).__name__

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PersistenceError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(error_type, "An error occurred")
