# app/transport/security.py
"""
Bearer-token auth for the admin and metrics endpoints, plus response hardening.

Admin routes need ADMIN_TOKEN. Metrics routes take METRICS_TOKEN, or
ADMIN_TOKEN when no metrics token is configured. Tokens are compared in
constant time.
"""
import hmac

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# 32 chars ~ 190 bits for a url-safe random token
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = (
    "password", "secret", "token", "admin", "test", "demo", "changeme",
    "123456", "000000", "111111", "aaaaaa",
)

# auto_error=False so a missing header maps to our own 401 body
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="ADMIN_TOKEN, without the 'Bearer ' prefix",
    auto_error=False,
)
metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="METRICS_TOKEN (ADMIN_TOKEN when unset)",
    auto_error=False,
)

def _unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Warnings for a weak token; empty when it looks randomly generated."""
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(f"{token_name} is too short ({len(token)} < {MIN_TOKEN_LENGTH} chars)")

    lowered = token.lower()
    weak = next((p for p in WEAK_TOKEN_PATTERNS if p in lowered), None)
    if weak:
        warnings.append(f"{token_name} contains weak pattern '{weak}'; generate it with secrets.token_urlsafe()")

    classes = (str.isupper, str.islower, str.isdigit)
    if not all(any(is_class(c) for c in token) for is_class in classes):
        warnings.append(f"{token_name} has low character diversity (mix upper, lower and digits)")

    return warnings


def check_configured_tokens():
    """Startup hook: log a warning per weakness of each configured token."""
    configured = {"ADMIN_TOKEN": settings.admin_token, "METRICS_TOKEN": settings.metrics_token}
    for name, token in configured.items():
        for warning in validate_token_strength(token, name) if token else ():
            logger.warning(f"SECURITY: {warning}")


def _token_matches(credentials: HTTPAuthorizationCredentials | None, expected: str) -> bool:
    if credentials is None:
        return False
    return hmac.compare_digest(credentials.credentials.encode(), expected.encode())


def require_admin_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Dependency for /admin/* routes.

    503 when ADMIN_TOKEN is not configured, 401 on a missing or wrong token.
    """
    if not settings.admin_token:
        logger.critical("Admin endpoint called but ADMIN_TOKEN is not configured")
        raise _unavailable()

    if not _token_matches(credentials, settings.admin_token):
        logger.warning(f"Admin auth failed: {'wrong token' if credentials else 'no bearer token'}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """Dependency for /metrics and /health/detailed."""
    expected = settings.metrics_token or settings.admin_token
    if not expected:
        raise _unavailable()

    if not _token_matches(credentials, expected):
        logger.warning(f"Metrics auth failed: {'wrong token' if credentials else 'no bearer token'}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# Client-facing text per exception type in production
_GENERIC_ERRORS = {
    "ValueError": "Invalid input",
    "KeyError": "Invalid request",
    "StoreUnavailable": "Service temporarily unavailable",
    "ConnectionError": "Service temporarily unavailable",
    "TimeoutError": "Request timeout",
}


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Raw message outside production; a fixed phrase per error type in production."""
    if is_production:
        return _GENERIC_ERRORS.get(type(error).__name__, "An error occurred")
    return str(error)


class SecurityHeaders:
    """Response headers for a JSON-only API"""

    STATIC = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "no-referrer",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    }

    @staticmethod
    def add_security_headers(response):
        response.headers.update(SecurityHeaders.STATIC)
        response.headers.setdefault("Cache-Control", "no-store")

        # Only behind TLS
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]
        return response
