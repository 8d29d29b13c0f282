# app/transport/security.py
"""
Caller identity and shared-secret checks for the HTTP API.

Identity model:
- End users are authenticated upstream; the gateway forwards the user id
  in ``X-Actor-Id``.  This service trusts that header.
- Admin rights require ``Authorization: Bearer <ADMIN_TOKEN>``.
- The payment collaborator calls back with ``PAYMENT_WEBHOOK_TOKEN``.
- ``/metrics`` accepts ``METRICS_TOKEN`` (or ``ADMIN_TOKEN`` when unset).

All token comparisons are constant-time.
"""
from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.infra.logging_config import get_logger, mask_identifier

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

ACTOR_HEADER = "X-Actor-Id"
# Recorded as the actor of changes made with only the admin token
ADMIN_ACTOR_ID = "admin"
MAX_ACTOR_ID_LENGTH = 128

bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Admin token (without 'Bearer ' prefix)",
    auto_error=False,
)

webhook_bearer_scheme = HTTPBearer(
    scheme_name="Payment Webhook Token",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    auto_error=False,
)


# =============================================================================
# Token hygiene
# =============================================================================

def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Returns a list of warnings (empty if the token looks strong).

    Checks minimum length, common weak patterns and character diversity.
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def generate_secure_token(length: int = 32) -> str:
    """URL-safe random token for ADMIN_TOKEN / PAYMENT_WEBHOOK_TOKEN / METRICS_TOKEN."""
    return secrets.token_urlsafe(length)


def check_configured_tokens() -> None:
    """Log a warning for every weak configured token.  Call at startup."""
    for name, value in (
        ("ADMIN_TOKEN", settings.admin_token),
        ("PAYMENT_WEBHOOK_TOKEN", settings.payment_webhook_token),
        ("METRICS_TOKEN", settings.metrics_token),
    ):
        if not value:
            continue
        for warning in validate_token_strength(value, name):
            logger.warning(f"SECURITY: {warning}")


def _token_matches(supplied: str | None, expected: str | None) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


def _bearer_value(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value:
        return None
    return value.strip()


# =============================================================================
# Caller
# =============================================================================

@dataclass(frozen=True)
class Caller:
    actor_id: str | None
    is_admin: bool = False

    @property
    def acting_id(self) -> str | None:
        """Who a change is attributed to; admins without an actor id act as ``ADMIN_ACTOR_ID``."""
        if self.actor_id:
            return self.actor_id
        return ADMIN_ACTOR_ID if self.is_admin else None

    def require_actor(self) -> str:
        if self.actor_id:
            return self.actor_id
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )


def _clean_actor_id(raw: str | None) -> str | None:
    if raw is None:
        return None
    actor_id = raw.strip()
    if not actor_id:
        return None
    if len(actor_id) > MAX_ACTOR_ID_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid actor id")
    return actor_id


def get_caller(
    x_actor_id: str | None = Header(default=None, alias=ACTOR_HEADER),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Caller:
    """Caller identity; a wrong admin token is an error, a missing one is not."""
    is_admin = False
    if credentials is not None:
        if not _token_matches(credentials.credentials, settings.admin_token):
            logger.warning("Invalid admin token attempt")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        is_admin = True
    return Caller(actor_id=_clean_actor_id(x_actor_id), is_admin=is_admin)


def require_actor(caller: Caller = Depends(get_caller)) -> Caller:
    caller.require_actor()
    return caller


def require_actor_or_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        caller.require_actor()
    return caller


def require_admin_auth(caller: Caller = Depends(get_caller)) -> Caller:
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


def websocket_caller(websocket: WebSocket) -> Caller:
    """
    Caller for a WebSocket handshake.

    Browsers cannot set headers on WebSocket upgrades, so ``actor_id`` and
    ``token`` query parameters are accepted as well.
    """
    actor_id = websocket.headers.get(ACTOR_HEADER) or websocket.query_params.get("actor_id")
    token = _bearer_value(websocket.headers.get("authorization")) or websocket.query_params.get("token")
    return Caller(
        actor_id=_clean_actor_id(actor_id),
        is_admin=_token_matches(token, settings.admin_token),
    )


# =============================================================================
# Collaborator callbacks & monitoring
# =============================================================================

def require_payment_webhook_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(webhook_bearer_scheme),
) -> None:
    if not settings.payment_webhook_token:
        logger.error("Payment confirmation received but PAYMENT_WEBHOOK_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )
    supplied = credentials.credentials if credentials else None
    if not _token_matches(supplied, settings.payment_webhook_token):
        logger.warning(
            "Payment webhook rejected: bad token",
            extra={"path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_metrics_auth(
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
) -> None:
    expected = settings.metrics_token or settings.admin_token
    if not settings.enable_metrics or not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if credentials is None:
        logger.warning("Metrics endpoint accessed without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not _token_matches(credentials.credentials, expected):
        logger.warning(
            "Invalid metrics token attempt",
            extra={"token_prefix": mask_identifier(credentials.credentials)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# Responses
# =============================================================================

class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    In production: generic messages.
    In dev: the exception text.
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(type(error).__name__, "An error occurred")
