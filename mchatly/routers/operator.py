from fastapi import APIRouter, Depends, status

from mchatly.dependencies import ServiceContainer, get_container
from mchatly.schemas.operator import (
    OperatorMessageRequest,
    OperatorMessageResponse,
    PresenceRequest,
    PresenceResponse,
)
from mchatly.services.records import ChatbotRecord
from mchatly.services.validation import UnknownTenantError, validate_identifier

router = APIRouter(prefix="/operator", tags=["operator"])


async def resolve_tenant(container: ServiceContainer, tenant_id: str) -> ChatbotRecord:
    validate_identifier(tenant_id, "tenant_id")
    chatbot = await container.store.get_chatbot(tenant_id)
    if chatbot is None:
        raise UnknownTenantError(tenant_id)
    return chatbot


@router.post(
    "/{tenant_id}/sessions/{session_id}/messages",
    response_model=OperatorMessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def post_operator_message(
    tenant_id: str,
    session_id: str,
    request: OperatorMessageRequest,
    container: ServiceContainer = Depends(get_container),
):
    await resolve_tenant(container, tenant_id)
    message = await container.coordinator.handle_operator_message(
        tenant_id,
        session_id,
        request.content,
        kind=request.type,
        operator_id=request.operator_id,
    )
    return OperatorMessageResponse(accepted=True, message_id=message.id)


@router.post("/{tenant_id}/sessions/{session_id}/join", response_model=PresenceResponse)
async def join_session(
    tenant_id: str,
    session_id: str,
    request: PresenceRequest,
    container: ServiceContainer = Depends(get_container),
):
    await resolve_tenant(container, tenant_id)
    mode = await container.coordinator.operator_join(tenant_id, session_id, request.operator_id)
    return PresenceResponse(session_id=session_id, mode=mode.value)


@router.post("/{tenant_id}/sessions/{session_id}/heartbeat", response_model=PresenceResponse)
async def heartbeat(
    tenant_id: str,
    session_id: str,
    request: PresenceRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Operator dashboards call this while the chat is open so presence does not lapse."""
    await resolve_tenant(container, tenant_id)
    mode = await container.coordinator.operator_heartbeat(tenant_id, session_id, request.operator_id)
    return PresenceResponse(session_id=session_id, mode=mode.value)


@router.post("/{tenant_id}/sessions/{session_id}/leave", response_model=PresenceResponse)
async def leave_session(
    tenant_id: str,
    session_id: str,
    request: PresenceRequest,
    container: ServiceContainer = Depends(get_container),
):
    await resolve_tenant(container, tenant_id)
    mode = await container.coordinator.operator_leave(tenant_id, session_id, request.operator_id)
    return PresenceResponse(session_id=session_id, mode=mode.value)
