import logging

from fastapi import Header, HTTPException, Request, status

from outbound_events.auth.context import SuperAdminContext
from outbound_events.auth.jwt import decode_super_admin_token
from outbound_events.db import supabase
from outbound_events.observability import incr_metric, log_event


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        return None
    return token.strip()


def _reject(request: Request, reason: str, detail: str) -> HTTPException:
    incr_metric("operator.auth.rejected", reason=reason)
    log_event(
        "operator_auth_rejected",
        level=logging.WARNING,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        reason=reason,
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


async def get_current_super_admin(
    request: Request,
    authorization: str | None = Header(None),
) -> SuperAdminContext:
    """Operator auth for dead-letter, stats and metrics routes.

    The bearer token must be a ``super_admin`` JWT whose subject still exists
    in ``super_admins``.
    """
    token = _extract_bearer_token(authorization)
    if not token:
        raise _reject(request, "missing_token", "Missing authorization header")

    payload = decode_super_admin_token(token)
    if not payload:
        raise _reject(request, "invalid_token", "Invalid or expired super-admin token")

    result = supabase.table("super_admins").select("id, email").eq("id", payload["sub"]).execute()
    if not result.data:
        raise _reject(request, "unknown_super_admin", "Super-admin not found")

    row = result.data[0]
    return SuperAdminContext(super_admin_id=row["id"], email=row["email"])
