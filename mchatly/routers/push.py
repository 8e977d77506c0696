from fastapi import APIRouter, Depends

from mchatly.dependencies import ServiceContainer, get_container
from mchatly.schemas.push import PushSubscriptionRequest, PushSubscriptionResponse
from mchatly.services.validation import validate_identifier

router = APIRouter(prefix="/push", tags=["push"])


@router.post("/subscriptions", response_model=PushSubscriptionResponse)
async def subscribe(
    request: PushSubscriptionRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Register (or refresh) a dashboard push subscription."""
    if request.tenant_id is not None:
        validate_identifier(request.tenant_id, "tenant_id")
    subscriber = await container.store.add_push_subscriber(
        request.endpoint,
        request.keys.model_dump(),
        tenant_id=request.tenant_id,
    )
    return PushSubscriptionResponse(success=True, subscription_id=subscriber.id)
