from .request_id_middleware import RequestIDMiddleware, REQUEST_ID_HEADER
from .admin_key_middleware import require_admin_key, ADMIN_KEY_HEADER

__all__ = [
    "RequestIDMiddleware",
    "REQUEST_ID_HEADER",
    "require_admin_key",
    "ADMIN_KEY_HEADER",
]
