from outbound_events.auth.context import SuperAdminContext
from outbound_events.auth.dependencies import get_current_super_admin
from outbound_events.auth.jwt import create_super_admin_token

__all__ = [
    "SuperAdminContext",
    "get_current_super_admin",
    "create_super_admin_token",
]
