"""
Question supply: JSON question files, tier filtering and non-repeating draws.
"""
import asyncio
import json
import logging
import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Question, QuestionKind, Tier

MULTIPLE_CHOICE_ANSWER_COUNT = 4
TRUE_FALSE_ANSWER_COUNT = 2
MAX_FILE_SIZE = 10 * 1024 * 1024

# Legacy names found in older question banks
KIND_ALIASES = {
    "multiple-choice": QuestionKind.MULTIPLE_CHOICE,
    "qcm": QuestionKind.MULTIPLE_CHOICE,
    "true-false": QuestionKind.TRUE_FALSE,
    "vf": QuestionKind.TRUE_FALSE,
}

TIER_ALIASES = {
    "easy": Tier.EASY,
    "facile": Tier.EASY,
    "medium": Tier.MEDIUM,
    "moyen": Tier.MEDIUM,
    "hard": Tier.HARD,
    "difficile": Tier.HARD,
}


class QuestionSupplyError(Exception):
    """Base exception for question supply errors."""
    pass


class ExhaustedQuestionPool(QuestionSupplyError):
    """Raised when a player has no unused question left in their tier."""

    def __init__(self, player_name: str, tier: Tier):
        self.player_name = player_name
        self.tier = tier
        super().__init__(f"No more questions available for {player_name} ({tier.value})")


def parse_tier(value: str) -> Optional[Tier]:
    """Map a tier name (English or legacy French) to a Tier."""
    if not isinstance(value, str):
        return None
    return TIER_ALIASES.get(value.strip().lower())


@dataclass
class _DrawCursor:
    order: List[Question]
    index: int = 0

    @property
    def exhausted(self) -> bool:
        return self.index >= len(self.order)


class DrawOrderCache:
    """
    Shuffle-and-drain cursors keyed by (pool size, tier).

    A pool is shuffled once and handed out in that order until drained, then
    reshuffled. Owned by a QuestionSupply and cleared at every new game.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._cursors: Dict[Tuple[int, Optional[Tier]], _DrawCursor] = {}

    def draw(self, pool: List[Question]) -> Optional[Question]:
        if not pool:
            return None

        key = (len(pool), pool[0].tier)
        pool_ids = {q.id for q in pool}
        cursor = self._cursors.get(key)

        # The cursor may come from another pool of the same size and tier;
        # entries outside the current pool are skipped.
        while cursor is not None and not cursor.exhausted:
            question = cursor.order[cursor.index]
            cursor.index += 1
            if question.id in pool_ids:
                return question

        order = list(pool)
        self._rng.shuffle(order)
        cursor = _DrawCursor(order)
        self._cursors[key] = cursor
        cursor.index = 1
        return order[0]

    def reset(self) -> None:
        self._cursors.clear()

    def __len__(self) -> int:
        return len(self._cursors)


class QuestionSupply:
    """Loads question records and hands them out per tier."""

    def __init__(self, question_directory: str = "./questions/", rng: Optional[random.Random] = None):
        """
        Initialize QuestionSupply with question directory path.

        Args:
            question_directory: Path to directory containing JSON question files
            rng: Random source for draw order
        """
        self.question_directory = Path(question_directory)
        self.questions: List[Question] = []
        self.logger = logging.getLogger(__name__)
        self.load_errors: List[str] = []
        self.draw_cache = DrawOrderCache(rng)

    async def load_all(self) -> List[Question]:
        """Load every question file without blocking the event loop."""
        return await asyncio.to_thread(self.load_question_files)

    def load_question_files(self) -> List[Question]:
        """
        Load all JSON files from the question directory.

        Invalid files and invalid records are skipped and reported through
        get_load_errors().

        Returns:
            List of all loaded questions
        """
        self.questions = []
        self.load_errors.clear()

        if not self.question_directory.is_dir():
            error = f"Question directory not found: {self.question_directory}"
            self.logger.error(error)
            self.load_errors.append(error)
            return []

        try:
            json_files = sorted(self.question_directory.glob("*.json"))
        except OSError as e:
            error = f"System error scanning {self.question_directory}: {e}"
            self.logger.error(error)
            self.load_errors.append(error)
            return []

        if not json_files:
            self.logger.warning(f"No JSON files found in {self.question_directory}")
            self.load_errors.append(f"No question files found in {self.question_directory}")
            return []

        seen_ids = set()
        for json_file in json_files:
            data = self._load_single_file(json_file)
            if data is None:
                continue
            for question in self._parse_questions(data, json_file.name):
                if question.id in seen_ids:
                    self.load_errors.append(f"{json_file.name}: duplicate question id {question.id}")
                    continue
                seen_ids.add(question.id)
                self.questions.append(question)

        self.logger.info(
            f"Loaded {len(self.questions)} questions from {len(json_files)} files"
        )
        if self.load_errors:
            self.logger.warning(f"Encountered {len(self.load_errors)} loading errors")
        return self.questions

    def load_records(self, records: Iterable[dict], source: str = "memory") -> List[Question]:
        """Replace the question set with in-memory records."""
        self.load_errors.clear()
        self.questions = self._parse_questions({"questions": list(records)}, source)
        return self.questions

    def _load_single_file(self, file_path: Path) -> Optional[dict]:
        try:
            if file_path.stat().st_size > MAX_FILE_SIZE:
                self.load_errors.append(f"{file_path.name}: file too large")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in {file_path}: {e}")
            self.load_errors.append(f"{file_path.name}: invalid JSON")
            return None
        except OSError as e:
            self.logger.error(f"Failed to read question file {file_path}: {e}")
            self.load_errors.append(f"{file_path.name}: {e}")
            return None

        if not self.validate_file_structure(data):
            self.load_errors.append(f"{file_path.name}: invalid structure")
            return None
        return data

    def validate_file_structure(self, data) -> bool:
        """
        Validate the top-level layout of a question file.

        Expected structure:
        {
            "questions": [
                {
                    "id": int,
                    "type": "multiple-choice" | "true-false",
                    "question": str,
                    "answers": [str, ...],
                    "correctAnswer": int,
                    "difficulty": "easy" | "medium" | "hard"
                }
            ]
        }
        """
        if not isinstance(data, dict):
            self.logger.error("Question data must be a JSON object")
            return False
        if "questions" not in data:
            self.logger.error("Question data must contain a 'questions' key")
            return False
        if not isinstance(data["questions"], list) or not data["questions"]:
            self.logger.error("'questions' must be a non-empty array")
            return False
        return True

    def parse_record(self, record: dict) -> Question:
        """
        Build a Question from one record.

        Raises:
            ValueError: If the record is malformed
        """
        if not isinstance(record, dict):
            raise ValueError("record must be an object")

        question_id = record.get("id")
        if not isinstance(question_id, int) or isinstance(question_id, bool):
            raise ValueError("'id' must be an integer")

        kind = KIND_ALIASES.get(str(record.get("type", "")).strip().lower())
        if kind is None:
            raise ValueError(f"unknown question type {record.get('type')!r}")

        prompt = record.get("question")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("'question' must be a non-empty string")

        answers = record.get("answers")
        if not isinstance(answers, list) or not all(isinstance(a, str) for a in answers):
            raise ValueError("'answers' must be an array of strings")
        expected = MULTIPLE_CHOICE_ANSWER_COUNT if kind is QuestionKind.MULTIPLE_CHOICE else TRUE_FALSE_ANSWER_COUNT
        if len(answers) != expected:
            raise ValueError(f"expected {expected} answers, got {len(answers)}")

        correct = record.get("correctAnswer")
        if not isinstance(correct, int) or isinstance(correct, bool) or not 0 <= correct < len(answers):
            raise ValueError("'correctAnswer' must index into 'answers'")

        tier = parse_tier(record.get("difficulty") or record.get("level"))
        if tier is None:
            raise ValueError("'difficulty' must be easy, medium or hard")

        return Question(question_id, kind, prompt, tuple(answers), correct, tier)

    def _parse_questions(self, data: dict, source: str) -> List[Question]:
        questions = []
        for i, record in enumerate(data["questions"]):
            try:
                questions.append(self.parse_record(record))
            except ValueError as e:
                self.logger.error(f"Skipping question {i} in {source}: {e}")
                self.load_errors.append(f"{source}: question {i}: {e}")
        return questions

    def questions_by_tier(self, tier: Tier, questions: Optional[List[Question]] = None) -> List[Question]:
        source = self.questions if questions is None else questions
        return [q for q in source if q.tier is tier]

    def draw(self, pool: List[Question]) -> Optional[Question]:
        """Next question from the pool's shuffled order, or None for an empty pool."""
        return self.draw_cache.draw(pool)

    def reset_draw_order(self) -> None:
        self.draw_cache.reset()
        self.logger.debug("Question draw order reset")

    def next_question_for(self, player_name: str, tier: Tier, used_ids) -> Question:
        """
        Draw an unused question in the player's tier.

        Raises:
            ExhaustedQuestionPool: If every question in the tier was used
        """
        available = [q for q in self.questions_by_tier(tier) if q.id not in used_ids]
        question = self.draw(available)
        if question is None:
            raise ExhaustedQuestionPool(player_name, tier)
        return question

    def get_load_errors(self) -> List[str]:
        return self.load_errors.copy()

    def has_load_errors(self) -> bool:
        return len(self.load_errors) > 0

    def get_loading_summary(self) -> Dict[str, object]:
        """
        Get a summary of the last load operation.

        Returns:
            Dictionary with per-tier counts and any load errors
        """
        return {
            'total_questions': len(self.questions),
            'by_tier': {tier.value: len(self.questions_by_tier(tier)) for tier in Tier},
            'has_errors': self.has_load_errors(),
            'error_count': len(self.load_errors),
            'errors': self.get_load_errors(),
            'question_directory': str(self.question_directory),
            'readable': os.access(self.question_directory, os.R_OK),
        }
