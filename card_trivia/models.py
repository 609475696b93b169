"""
Core data models for the card trivia game.
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple


class Tier(Enum):
    """Difficulty level of a player and of a question."""
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class QuestionKind(Enum):
    """Answer format of a question."""
    MULTIPLE_CHOICE = "multiple-choice"
    TRUE_FALSE = "true-false"


class GamePhase(Enum):
    """Top-level state of a game session."""
    SETUP = "setup"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


@dataclass(frozen=True)
class Question:
    """A single trivia question. Immutable once loaded."""
    id: int
    kind: QuestionKind
    prompt: str
    answers: Tuple[str, ...]
    correct_answer: int
    tier: Tier

    @property
    def is_multiple_choice(self) -> bool:
        return self.kind is QuestionKind.MULTIPLE_CHOICE


@dataclass
class Player:
    """A seat at the table."""
    id: int
    name: str
    tier: Tier
    score: int = 0


@dataclass
class GameSession:
    """Mutable aggregate owned by the game state machine."""
    phase: GamePhase = GamePhase.SETUP
    players: List[Player] = field(default_factory=list)
    current_player_index: int = 0
    target_score: int = 10
    current_question: Optional[Question] = None
    used_question_ids: Dict[int, Set[int]] = field(default_factory=dict)
    consecutive_correct: Dict[int, int] = field(default_factory=dict)
    pending_shared_bonus_offer: bool = False
    offer_player_id: Optional[int] = None
    game_finished: bool = False
    winners: List[Player] = field(default_factory=list)
    generation: int = 0


@dataclass(frozen=True)
class PlayerSnapshot:
    id: int
    name: str
    tier: Tier
    score: int


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a GameSession handed to the presentation layer."""
    phase: GamePhase
    players: Tuple[PlayerSnapshot, ...]
    current_player_index: int
    target_score: int
    current_question: Optional[Question]
    used_question_ids: Mapping[int, frozenset]
    consecutive_correct: Mapping[int, int]
    pending_shared_bonus_offer: bool
    offer_player_id: Optional[int]
    game_finished: bool
    winners: Tuple[PlayerSnapshot, ...]
    generation: int

    @property
    def current_player(self) -> Optional[PlayerSnapshot]:
        if not self.players:
            return None
        return self.players[self.current_player_index]

    def player(self, player_id: int) -> Optional[PlayerSnapshot]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    @property
    def scores(self) -> Dict[int, int]:
        return {player.id: player.score for player in self.players}

    @classmethod
    def from_session(cls, session: GameSession) -> "SessionSnapshot":
        def freeze(player: Player) -> PlayerSnapshot:
            return PlayerSnapshot(player.id, player.name, player.tier, player.score)

        return cls(
            phase=session.phase,
            players=tuple(freeze(p) for p in session.players),
            current_player_index=session.current_player_index,
            target_score=session.target_score,
            current_question=session.current_question,
            used_question_ids=MappingProxyType(
                {pid: frozenset(ids) for pid, ids in session.used_question_ids.items()}
            ),
            consecutive_correct=MappingProxyType(dict(session.consecutive_correct)),
            pending_shared_bonus_offer=session.pending_shared_bonus_offer,
            offer_player_id=session.offer_player_id,
            game_finished=session.game_finished,
            winners=tuple(freeze(p) for p in session.winners),
            generation=session.generation,
        )


@dataclass
class GameSettings:
    """Configuration settings for a table."""
    default_target_score: int = 10
    card_display_duration: float = 3.5
    revelation_delay: float = 3.6
    card_lock_duration: float = 4.0
    card_check_delay: float = 0.1
    correct_feedback_delay: float = 2.0
    wrong_feedback_delay: float = 1.5
