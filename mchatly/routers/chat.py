from fastapi import APIRouter, Depends, Query

from mchatly.dependencies import ServiceContainer, get_container
from mchatly.schemas.history import HistoryItem, HistoryResponse
from mchatly.schemas.message import VisitorMessageRequest, VisitorMessageResponse
from mchatly.services.records import ChatbotRecord
from mchatly.services.validation import UnknownTenantError, validate_identifier

router = APIRouter(prefix="/chat", tags=["chat"])


async def resolve_chatbot(container: ServiceContainer, token: str) -> ChatbotRecord:
    validate_identifier(token, "token")
    chatbot = await container.store.get_chatbot_by_token(token)
    if chatbot is None:
        raise UnknownTenantError(token)
    return chatbot


@router.post("/{token}/sessions/{session_id}/messages", response_model=VisitorMessageResponse)
async def post_visitor_message(
    token: str,
    session_id: str,
    request: VisitorMessageRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Visitor widget entry point: bot answer or relay to the present operator."""
    validate_identifier(session_id, "session_id")
    chatbot = await resolve_chatbot(container, token)

    outcome = await container.coordinator.handle_visitor_message(
        chatbot.id,
        session_id,
        request.content,
        kind=request.type,
        visitor_name=request.name,
        visitor_contact=request.contact,
    )
    return VisitorMessageResponse(
        success=outcome.error_code is None,
        session_id=session_id,
        mode=outcome.mode.value,
        forwarded=outcome.forwarded,
        reply=outcome.reply,
        used_knowledge_count=outcome.used_knowledge_count,
        error_code=outcome.error_code,
    )


@router.get("/{token}/sessions/{session_id}/history", response_model=HistoryResponse)
async def get_history(
    token: str,
    session_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    container: ServiceContainer = Depends(get_container),
):
    """Timeline for the widget to restore after a reload."""
    validate_identifier(session_id, "session_id")
    chatbot = await resolve_chatbot(container, token)

    messages = await container.store.recent_messages(chatbot.id, session_id, limit)
    items = [
        HistoryItem(
            id=m.id,
            role=m.role.value,
            content=m.content,
            type=m.kind.value,
            created_at=m.created_at,
        )
        for m in messages
    ]
    return HistoryResponse(session_id=session_id, count=len(items), messages=items)
