"""
Payment page states.
Transitions are table-driven; anything not listed is rejected.
"""

from enum import Enum
from typing import Dict, FrozenSet


class FlowStep(str, Enum):
    """Steps of the payment page."""

    CARD_INPUT = "card-input"              # form interactive
    THREEDS_VERIFICATION = "3ds-verification"  # challenge being relayed
    PROCESSING = "processing"              # mid-navigation or reconciling
    COMPLETE = "complete"                  # result shown


class PaymentOutcome(str, Enum):
    """Result shown on the complete step."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"


ALLOWED_TRANSITIONS: Dict[FlowStep, FrozenSet[FlowStep]] = {
    FlowStep.CARD_INPUT: frozenset({
        FlowStep.CARD_INPUT,
        FlowStep.THREEDS_VERIFICATION,
        FlowStep.PROCESSING,
        FlowStep.COMPLETE,
    }),
    FlowStep.THREEDS_VERIFICATION: frozenset({
        FlowStep.PROCESSING,
        FlowStep.CARD_INPUT,
    }),
    FlowStep.PROCESSING: frozenset({
        FlowStep.PROCESSING,
        FlowStep.COMPLETE,
        FlowStep.CARD_INPUT,
    }),
    FlowStep.COMPLETE: frozenset({
        FlowStep.PROCESSING,
        FlowStep.COMPLETE,
        FlowStep.CARD_INPUT,
    }),
}


def can_transition(current: FlowStep, target: FlowStep) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
