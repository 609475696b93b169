"""
Answer ordering for presented questions.
"""
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .models import Question, Tier

EASY_FRONT_LOAD_PROBABILITY = 0.4


@dataclass(frozen=True)
class AnswerLayout:
    """
    Display order of a question's answers.

    order[display_position] is the canonical answer index shown there.
    """
    question_id: int
    order: Tuple[int, ...]

    def canonical_index(self, display_position: int) -> int:
        return self.order[display_position]

    def display_position(self, canonical_index: int) -> int:
        return self.order.index(canonical_index)

    def mapping(self) -> Dict[int, int]:
        """Display position -> canonical index."""
        return dict(enumerate(self.order))

    def displayed_answers(self, question: Question) -> List[str]:
        return [question.answers[i] for i in self.order]

    def is_correct(self, question: Question, display_position: int) -> bool:
        return self.canonical_index(display_position) == question.correct_answer


class AnswerShuffler:
    """Builds AnswerLayouts, biased toward the correct answer on easy tier."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def shuffle(self, question: Question, tier: Tier) -> AnswerLayout:
        indices = list(range(len(question.answers)))

        if not question.is_multiple_choice:
            return AnswerLayout(question.id, tuple(indices))

        if tier is Tier.EASY and self._rng.random() < EASY_FRONT_LOAD_PROBABILITY:
            others = [i for i in indices if i != question.correct_answer]
            self._rng.shuffle(others)
            order = [question.correct_answer] + others
        else:
            order = indices
            self._rng.shuffle(order)

        return AnswerLayout(question.id, tuple(order))
