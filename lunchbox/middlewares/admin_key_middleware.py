import hmac
from fastapi import Request

from lunchbox.config.settings import settings
from lunchbox.utils.errors import AuthorizationError
from lunchbox.utils.logging import get_logger

ADMIN_KEY_HEADER = "X-Admin-Key"

logger = get_logger()


def require_admin_key(request: Request) -> None:
    """Dependency guarding administrative routes when ADMIN_API_KEY is set"""
    expected = settings.ADMIN_API_KEY
    if not expected:
        return

    provided = request.headers.get(ADMIN_KEY_HEADER, "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected admin request to {request.url.path}")
        raise AuthorizationError("Invalid or missing admin key", "INVALID_ADMIN_KEY")
