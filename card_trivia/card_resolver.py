"""
Random event cards drawn when a question is presented.

Each tier has an independent probability per card. A single uniform draw is
tested against the thresholds in priority order and the first eligible card
whose threshold exceeds the draw fires.
"""
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .answer_shuffler import AnswerLayout
from .game_state import CardEffect
from .models import QuestionKind, Tier

logger = logging.getLogger(__name__)

CARD_SUPPRESSING_STREAK = 2
REVELATION_ELIMINATIONS = 2


class CardType(Enum):
    REVELATION = "revelation"
    MIRACLE = "miracle"
    REVERSAL = "reversal"
    BLESSING = "blessing"
    TRIAL = "trial"


CARD_PRIORITY: Tuple[CardType, ...] = (
    CardType.REVELATION,
    CardType.MIRACLE,
    CardType.REVERSAL,
    CardType.BLESSING,
    CardType.TRIAL,
)

CARD_PROBABILITIES: Dict[Tier, Dict[CardType, float]] = {
    Tier.EASY: {
        CardType.REVELATION: 0.08,
        CardType.MIRACLE: 0.001,
        CardType.REVERSAL: 0.03,
        CardType.BLESSING: 0.10,
        CardType.TRIAL: 0.005,
    },
    Tier.MEDIUM: {
        CardType.REVELATION: 0.04,
        CardType.MIRACLE: 0.001,
        CardType.REVERSAL: 0.03,
        CardType.BLESSING: 0.01,
        CardType.TRIAL: 0.01,
    },
    Tier.HARD: {
        CardType.REVELATION: 0.0,
        CardType.MIRACLE: 0.001,
        CardType.REVERSAL: 0.03,
        CardType.BLESSING: 0.005,
        CardType.TRIAL: 0.10,
    },
}

HARD_TRIAL_PENALTIES = (1, 2)


class CardResolutionError(Exception):
    """Base exception for card resolution errors."""
    pass


class RevelationSafetyError(CardResolutionError):
    """Raised when an elimination would remove the correct answer."""
    pass


@dataclass(frozen=True)
class CardContext:
    """Everything the resolver needs to know about one presentation."""
    tier: Tier
    question_kind: QuestionKind
    correct_answer: int
    layout: AnswerLayout
    player_count: int
    consecutive_correct: int = 0
    card_showing: bool = False
    card_resolving: bool = False
    offer_pending: bool = False


@dataclass(frozen=True)
class CardDraw:
    """
    A fired card.

    For Revelation the layout and correct answer are the ones captured at
    draw time; the delayed elimination must use these, not the live layout.
    """
    card_type: CardType
    draw: float
    effect: Optional[CardEffect] = None
    layout: Optional[AnswerLayout] = None
    correct_answer: Optional[int] = None

    @property
    def is_delayed(self) -> bool:
        return self.card_type is CardType.REVELATION


class CardResolver:
    """Decides whether a card fires and what it does."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def is_blocked(self, context: CardContext) -> bool:
        """A card check is skipped while another effect is in flight or a bonus offer is near."""
        return (
            context.card_showing
            or context.card_resolving
            or context.offer_pending
            or context.consecutive_correct >= CARD_SUPPRESSING_STREAK
        )

    def _is_eligible(self, card_type: CardType, context: CardContext) -> bool:
        if card_type is CardType.REVELATION:
            return context.question_kind is QuestionKind.MULTIPLE_CHOICE
        if card_type is CardType.REVERSAL:
            return context.player_count >= 2
        return True

    def resolve(self, context: CardContext, draw: Optional[float] = None) -> Optional[CardDraw]:
        """
        Check for a card.

        Args:
            context: Presentation context
            draw: Uniform value in [0, 1); drawn from the resolver's rng if omitted

        Returns:
            The fired card, or None
        """
        if self.is_blocked(context):
            logger.debug(
                "Card check skipped",
                extra={
                    'event_type': 'card_check_blocked',
                    'card_showing': context.card_showing,
                    'card_resolving': context.card_resolving,
                    'offer_pending': context.offer_pending,
                    'consecutive_correct': context.consecutive_correct,
                    'timestamp': time.time()
                }
            )
            return None

        if draw is None:
            draw = self._rng.random()

        table = CARD_PROBABILITIES[context.tier]
        for card_type in CARD_PRIORITY:
            if not self._is_eligible(card_type, context):
                continue
            if draw < table[card_type]:
                card = self._build(card_type, draw, context)
                logger.info(
                    f"Card drawn: {card_type.value}",
                    extra={
                        'event_type': 'card_drawn',
                        'card_type': card_type.value,
                        'tier': context.tier.value,
                        'draw': draw,
                        'timestamp': time.time()
                    }
                )
                return card
        return None

    def _build(self, card_type: CardType, draw: float, context: CardContext) -> CardDraw:
        if card_type is CardType.REVELATION:
            return CardDraw(
                card_type,
                draw,
                layout=context.layout,
                correct_answer=context.correct_answer,
            )
        if card_type is CardType.MIRACLE:
            return CardDraw(card_type, draw, effect=CardEffect.miracle())
        if card_type is CardType.REVERSAL:
            return CardDraw(card_type, draw, effect=CardEffect.reversal())
        if card_type is CardType.BLESSING:
            return CardDraw(card_type, draw, effect=CardEffect.score_delta(1))

        penalty = 1
        if context.tier is Tier.HARD:
            penalty = self._rng.choice(HARD_TRIAL_PENALTIES)
        return CardDraw(card_type, draw, effect=CardEffect.score_delta(-penalty))

    def eliminate_answers(self, card: CardDraw) -> List[int]:
        """
        Pick the display positions a Revelation card removes.

        Raises:
            RevelationSafetyError: If the elimination cannot be done without
                touching the correct answer
        """
        if card.card_type is not CardType.REVELATION or card.layout is None:
            raise CardResolutionError(f"{card.card_type.value} card does not eliminate answers")

        layout = card.layout
        wrong_positions = [
            position for position, canonical in layout.mapping().items()
            if canonical != card.correct_answer
        ]
        if len(wrong_positions) < REVELATION_ELIMINATIONS:
            raise RevelationSafetyError(
                f"Question {layout.question_id} has only {len(wrong_positions)} wrong answers"
            )

        eliminated = self._rng.sample(wrong_positions, REVELATION_ELIMINATIONS)

        correct_position = layout.display_position(card.correct_answer)
        if correct_position in eliminated:
            raise RevelationSafetyError(
                f"Elimination {eliminated} would remove the correct answer of question {layout.question_id}"
            )
        return sorted(eliminated)
