"""
Authentication and service dependencies for the billing API.

Security:
- Caller identity from the gateway-authenticated X-User-ID header
- Admin endpoints behind X-Admin-Key
"""

from clipper_billing.auth.dependencies import (
    get_authenticated_user,
    verify_admin_key,
)

__all__ = [
    "get_authenticated_user",
    "verify_admin_key",
]
