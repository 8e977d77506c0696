"""Generation prompt assembly.

`compose_prompt` is pure: the same inputs always give the same prompt, which
keeps it testable without any of the external collaborators.
"""

import re
from typing import List, Optional, Sequence

from mchatly.config import settings
from mchatly.services.knowledge_service import KnowledgeCandidate
from mchatly.services.records import MessageRole, TimelineMessage

INSTRUCTIONS_PREAMBLE = (
    "You are an AI chatbot assistant for a business. Your behavior, tone, and rules are "
    "defined by the following instructions from the business owner (between triple dashes):"
)
FAQ_PREAMBLE = (
    "The user's question matches the following FAQ. Use this FAQ answer to help craft a "
    "natural, helpful response."
)
CONTEXT_PREAMBLE = "Here is some context from the knowledge base and FAQs:"
HISTORY_PREAMBLE = "Conversation so far:"

_QA_PAIR = re.compile(r"(?:Q:|Question:)\s*.*?(?:A:|Answer:)\s*(.*)", re.IGNORECASE | re.DOTALL)
_LEADING_LABEL = re.compile(r"^\s*(?:Q:|Question:|A:|Answer:)\s*", re.IGNORECASE)


def normalize_faq_answer(text: str) -> str:
    """Strip Q/A labels so the generator does not echo them."""
    pair = _QA_PAIR.search(text or "")
    answer = pair.group(1) if pair else (text or "")
    while True:
        stripped = _LEADING_LABEL.sub("", answer, count=1)
        if stripped == answer:
            break
        answer = stripped
    return answer.strip()


def _history_lines(history: Sequence[TimelineMessage], max_turns: int) -> List[str]:
    turns = [m for m in history if m.role != MessageRole.SYSTEM]
    if max_turns <= 0:
        return []
    lines = []
    for message in turns[-max_turns:]:
        speaker = "User" if message.role == MessageRole.VISITOR else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return lines


def compose_prompt(
    tenant_instructions: str,
    best_faq: Optional[KnowledgeCandidate],
    context_snippets: Sequence[str],
    recent_history: Sequence[TimelineMessage],
    visitor_query: str,
    *,
    faq_threshold: float = settings.faq_direct_threshold,
    max_history_turns: int = settings.prompt_history_turns,
) -> str:
    prompt = f"{INSTRUCTIONS_PREAMBLE}\n---\n{(tenant_instructions or '').strip()}\n---\n"

    if best_faq is not None and best_faq.score >= faq_threshold:
        prompt += (
            f"\n{FAQ_PREAMBLE}\n"
            f"FAQ Question: {best_faq.question or ''}\n"
            f"FAQ Answer: {normalize_faq_answer(best_faq.text)}\n"
        )

    if context_snippets:
        numbered = "\n".join(f"Context {i}: {text}" for i, text in enumerate(context_snippets, 1))
        prompt += f"\n{CONTEXT_PREAMBLE}\n{numbered}\n"

    history_lines = _history_lines(recent_history, max_history_turns)
    if history_lines:
        prompt += f"\n{HISTORY_PREAMBLE}\n" + "\n".join(history_lines) + "\n"

    prompt += f"\nUser: {visitor_query.strip()}\nAssistant:"
    return prompt
