"""Durable escalation firing for deployments driven by an external cron."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from mchatly.config import settings
from mchatly.dependencies import ServiceContainer, get_container
from mchatly.schemas.escalation import ProcessDueResponse

router = APIRouter(prefix="/escalations", tags=["escalations"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


@router.post("/process-due", response_model=ProcessDueResponse)
async def process_due(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    container: ServiceContainer = Depends(get_container),
):
    _require_admin_token(x_admin_token)
    notified = await container.scheduler.process_due()
    return ProcessDueResponse(success=True, notified=notified)
