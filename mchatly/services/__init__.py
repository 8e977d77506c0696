from mchatly.services.escalation_service import EscalationHandle, EscalationScheduler
from mchatly.services.handoff_service import SessionHandoffCoordinator, VisitorOutcome
from mchatly.services.knowledge_service import KnowledgeMatch, KnowledgeMatcher
from mchatly.services.prompt_service import compose_prompt
from mchatly.services.response_service import EscalationTrigger, ResponseRouter, RoutedReply
from mchatly.services.state_machine import (
    InvalidTransitionError,
    SessionMode,
    can_transition,
    operator_joined,
    operator_left,
    transition,
)
