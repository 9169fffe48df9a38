"""Self-service view of the caller's own moderation status."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.infra.auth import AuthenticatedUser, get_current_user
from app.moderation.domain.container import get_user_repository
from app.moderation.domain.sanctions import check_user_status

router = APIRouter(prefix="/api/mod/v1/me", tags=["moderation-me"])


class AccessStatusOut(BaseModel):
    status: str
    code: Optional[str] = None
    suspended_until: Optional[datetime] = None
    reason: Optional[str] = None
    active_warnings: int = 0


@router.get("/status", response_model=AccessStatusOut)
async def my_status(user: AuthenticatedUser = Depends(get_current_user)) -> AccessStatusOut:
    # Not behind the account status gate.
    state = await get_user_repository().get(user.id)
    if state is None:
        return AccessStatusOut(status="allowed")
    decision = check_user_status(state)
    return AccessStatusOut(
        status=decision.status.value,
        code=decision.code,
        suspended_until=decision.until,
        reason=decision.reason,
        active_warnings=len(state.active_warnings()),
    )
