"""Service wiring for the HTTP layer.

Everything is built once per process from settings; tests swap the whole
container through `app.dependency_overrides[get_container]`.
"""

from functools import lru_cache

from mchatly.config import settings
from mchatly.database import SessionLocal
from mchatly.services.escalation_service import EscalationScheduler
from mchatly.services.handoff_service import SessionHandoffCoordinator
from mchatly.services.knowledge_service import BgeEmbedder, KnowledgeMatcher, QdrantIndex
from mchatly.services.llm import LLMProvider, OpenAIProvider
from mchatly.services.push_service import PushSender, WebPushSender
from mchatly.services.realtime import InMemoryTransport, RealtimeTransport, RedisTransport
from mchatly.services.response_service import EscalationTrigger, ResponseRouter
from mchatly.services.store import MessageStore, SqlMessageStore


def build_transport() -> RealtimeTransport:
    if settings.realtime_backend == "redis":
        return RedisTransport(settings.redis_url, presence_ttl_seconds=settings.presence_ttl_seconds)
    return InMemoryTransport()


class ServiceContainer:
    """Holds one instance of each collaborator and the services built on them."""

    def __init__(
        self,
        store: MessageStore,
        transport: RealtimeTransport,
        matcher: KnowledgeMatcher,
        llm: LLMProvider,
        push_sender: PushSender,
    ):
        self.store = store
        self.transport = transport
        self.scheduler = EscalationScheduler(store, push_sender)
        self.router = ResponseRouter(
            store,
            matcher,
            llm,
            scheduler=self.scheduler,
            trigger=EscalationTrigger(settings.escalation_trigger_phrases),
        )
        self.coordinator = SessionHandoffCoordinator(store, transport, self.router)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.coordinator.close()
        await self.transport.close()


@lru_cache
def get_container() -> ServiceContainer:
    return ServiceContainer(
        store=SqlMessageStore(SessionLocal),
        transport=build_transport(),
        matcher=KnowledgeMatcher(BgeEmbedder(), QdrantIndex()),
        llm=OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            default_temperature=settings.llm_temperature,
            timeout_seconds=settings.llm_timeout_seconds,
        ),
        push_sender=WebPushSender(),
    )
