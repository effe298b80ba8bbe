"""Session introspection endpoint."""

from fastapi import APIRouter

from payroll_approvals.api.dependencies import AppSettings, CurrentScope
from payroll_approvals.api.schemas import ErrorResponse, SessionResponse
from payroll_approvals.auth.roles import permissions_of

router = APIRouter(prefix="/session", tags=["session"])


@router.get(
    "",
    response_model=SessionResponse,
    responses={401: {"model": ErrorResponse}},
)
async def get_session_info(scope: CurrentScope, settings: AppSettings) -> SessionResponse:
    """Effective identity for the bearer token.

    ``refresh_recommended`` tells the client to refresh its token once the
    remaining lifetime falls inside the configured refresh window.
    """
    auth = scope.auth
    async with scope.unit_of_work():
        remaining = scope.ctx.seconds_until_expiry(auth.now)

    return SessionResponse(
        user_id=auth.actor_id,
        real_user_id=auth.real_user_id,
        role=auth.role.value,
        organization_id=auth.organization_id,
        impersonating=auth.scope.impersonating,
        permissions=sorted(p.value for p in permissions_of(auth.role)),
        expires_at=scope.ctx.token_expiry,
        seconds_until_expiry=remaining,
        refresh_recommended=remaining <= settings.session_refresh_window_seconds,
    )
