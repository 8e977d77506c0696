"""Bot-mode answer pipeline: knowledge match, prompt, generation, logging."""

from dataclasses import dataclass
from typing import Iterable, Optional

from mchatly.config import settings
from mchatly.logging_config import get_logger
from mchatly.services.alert_service import alert_error
from mchatly.services.escalation_service import EscalationScheduler
from mchatly.services.knowledge_service import KnowledgeMatch, KnowledgeMatcher
from mchatly.services.llm import LLMProvider
from mchatly.services.prompt_service import compose_prompt
from mchatly.services.records import MessageKind, MessageRole, TimelineMessage
from mchatly.services.result import GENERATION_ERROR, RAG_ERROR, STORE_ERROR, Result
from mchatly.services.store import MessageStore
from mchatly.services.validation import validate_identifier

logger = get_logger("response_service")

FALLBACK_REPLY = "Sorry, I could not generate a response."
ERROR_REPLY = "Sorry, something went wrong. Please try again in a moment."
MEDIA_REPLY = "Thanks! I can only read text messages, but a team member will take a look."


@dataclass
class RoutedReply:
    reply: str
    used_knowledge_count: int = 0
    needs_human: bool = False
    error_code: Optional[str] = None


class EscalationTrigger:
    """Decides whether a bot reply promised a human follow-up."""

    def __init__(self, phrases: Iterable[str] = settings.escalation_trigger_phrases):
        self.phrases = [p.strip().lower() for p in phrases if p and p.strip()]

    def __call__(self, reply: str) -> bool:
        text = (reply or "").lower()
        return any(phrase in text for phrase in self.phrases)


class ResponseRouter:
    def __init__(
        self,
        store: MessageStore,
        matcher: KnowledgeMatcher,
        llm: LLMProvider,
        scheduler: Optional[EscalationScheduler] = None,
        trigger: Optional[EscalationTrigger] = None,
        faq_threshold: float = settings.faq_direct_threshold,
        history_turns: int = settings.prompt_history_turns,
    ):
        self.store = store
        self.matcher = matcher
        self.llm = llm
        self.scheduler = scheduler
        self.trigger = trigger or EscalationTrigger()
        self.faq_threshold = faq_threshold
        self.history_turns = history_turns

    async def _match(self, tenant_id: str, text: str) -> Result[KnowledgeMatch]:
        try:
            return Result.success(await self.matcher.match(tenant_id, text))
        except Exception as exc:
            return Result.from_exception(exc, RAG_ERROR)

    async def _generate(self, prompt: str) -> Result[str]:
        try:
            response = await self.llm.generate(prompt)
            return Result.success((response.content or "").strip())
        except Exception as exc:
            return Result.from_exception(exc, GENERATION_ERROR)

    async def _record_reply(self, tenant_id: str, session_id: str, reply: str) -> None:
        try:
            await self.store.append(
                TimelineMessage(tenant_id=tenant_id, session_id=session_id, role=MessageRole.BOT, content=reply)
            )
        except Exception as exc:
            logger.error(
                "Failed to record bot reply",
                extra={"context": {"tenant_id": tenant_id, "session_id": session_id, "error": str(exc)}},
            )

    async def _fail(self, tenant_id: str, session_id: str, result: Result) -> RoutedReply:
        context = {"tenant_id": tenant_id, "session_id": session_id, "error_code": result.error_code}
        logger.error(f"Response pipeline failed: {result.error}", extra={"context": context})
        await alert_error(f"Response pipeline failed: {result.error}", context)
        await self._record_reply(tenant_id, session_id, ERROR_REPLY)
        return RoutedReply(reply=ERROR_REPLY, error_code=result.error_code)

    async def _escalate(self, tenant_id: str, session_id: str) -> None:
        if self.scheduler is None:
            return
        try:
            await self.scheduler.arm(session_id, tenant_id)
        except Exception as exc:
            logger.error(
                "Failed to arm escalation",
                extra={"context": {"tenant_id": tenant_id, "session_id": session_id, "error": str(exc)}},
            )

    async def handle_visitor_message(
        self,
        tenant_id: str,
        session_id: str,
        text: str,
        kind: MessageKind = MessageKind.TEXT,
    ) -> RoutedReply:
        """Answer a visitor message in bot mode.

        The visitor message is recorded first; a store failure there propagates.
        Every later failure turns into ERROR_REPLY so the visitor always gets an answer.
        """
        validate_identifier(tenant_id, "tenant_id")
        validate_identifier(session_id, "session_id")

        visitor = await self.store.append(
            TimelineMessage(tenant_id=tenant_id, session_id=session_id, role=MessageRole.VISITOR, content=text, kind=kind)
        )

        if kind != MessageKind.TEXT:
            await self._record_reply(tenant_id, session_id, MEDIA_REPLY)
            return RoutedReply(reply=MEDIA_REPLY)

        knowledge = await self._match(tenant_id, text)
        if not knowledge.ok:
            return await self._fail(tenant_id, session_id, knowledge)

        match = knowledge.value
        if match.is_empty:
            logger.info(
                "No knowledge for query, using fallback",
                extra={"context": {"tenant_id": tenant_id, "session_id": session_id}},
            )
            await self._record_reply(tenant_id, session_id, FALLBACK_REPLY)
            return RoutedReply(reply=FALLBACK_REPLY, used_knowledge_count=0)

        try:
            chatbot = await self.store.get_chatbot(tenant_id)
            history = await self.store.recent_messages(tenant_id, session_id, self.history_turns + 1)
        except Exception as exc:
            return await self._fail(tenant_id, session_id, Result.from_exception(exc, STORE_ERROR))

        history = [m for m in history if m.id != visitor.id]
        prompt = compose_prompt(
            chatbot.instruction_text if chatbot else "",
            match.best_faq,
            match.context_snippets,
            history,
            text,
            faq_threshold=self.faq_threshold,
            max_history_turns=self.history_turns,
        )

        generation = await self._generate(prompt)
        if not generation.ok:
            return await self._fail(tenant_id, session_id, generation)

        reply = generation.value or FALLBACK_REPLY
        needs_human = self.trigger(reply)
        await self._record_reply(tenant_id, session_id, reply)

        if needs_human:
            await self._escalate(tenant_id, session_id)

        logger.info(
            "Bot reply generated",
            extra={
                "context": {
                    "tenant_id": tenant_id,
                    "session_id": session_id,
                    "used_knowledge_count": len(match.context_snippets),
                    "best_faq_score": match.best_faq.score if match.best_faq else None,
                    "needs_human": needs_human,
                }
            },
        )
        return RoutedReply(
            reply=reply,
            used_knowledge_count=len(match.context_snippets),
            needs_human=needs_human,
        )
