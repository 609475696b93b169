"""
Game state machine for the card trivia game.

The GameStateMachine owns the GameSession aggregate. Callers never touch the
session directly; they submit transition requests (StartGame, AnswerQuestion,
...) through dispatch() or the named wrapper methods and read back immutable
SessionSnapshot objects.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

from .models import GamePhase, GameSession, Player, Question, SessionSnapshot

logger = logging.getLogger(__name__)

SHARED_BONUS_STREAK = 3
PODIUM_SIZE = 3


class GameStateError(Exception):
    """Base exception for game state machine errors."""
    pass


class InvalidTransitionError(GameStateError):
    """Raised when a transition is not legal in the current state."""
    pass


class DuplicateQuestionError(GameStateError):
    """Raised when a question is set twice for the same player."""

    def __init__(self, player_id: int, question_id: int):
        self.player_id = player_id
        self.question_id = question_id
        super().__init__(f"Question {question_id} was already used by player {player_id}")


class UnknownPlayerError(GameStateError):
    """Raised when a transition references a player that is not seated."""
    pass


class CardEffectKind(Enum):
    DELTA = "delta"
    MIRACLE = "miracle"
    REVERSAL = "reversal"


@dataclass(frozen=True)
class CardEffect:
    """Score mutation produced by an event card."""
    kind: CardEffectKind
    delta: int = 0

    @classmethod
    def score_delta(cls, delta: int) -> "CardEffect":
        return cls(CardEffectKind.DELTA, delta)

    @classmethod
    def miracle(cls) -> "CardEffect":
        return cls(CardEffectKind.MIRACLE)

    @classmethod
    def reversal(cls) -> "CardEffect":
        return cls(CardEffectKind.REVERSAL)


# Transition requests

@dataclass(frozen=True)
class StartGame:
    players: Sequence[Player]
    target_score: int


@dataclass(frozen=True)
class SetCurrentQuestion:
    question: Question


@dataclass(frozen=True)
class AnswerQuestion:
    is_correct: bool


@dataclass(frozen=True)
class ApplyCardEffect:
    effect: CardEffect


@dataclass(frozen=True)
class ResolveSharedBonusOffer:
    target_player_id: Optional[int] = None


@dataclass(frozen=True)
class RestartGame:
    pass


@dataclass(frozen=True)
class ResetToSetup:
    pass


Transition = Union[
    StartGame,
    SetCurrentQuestion,
    AnswerQuestion,
    ApplyCardEffect,
    ResolveSharedBonusOffer,
    RestartGame,
    ResetToSetup,
]


@dataclass(frozen=True)
class TransitionResult:
    """Snapshot after a transition plus the signals it derived."""
    snapshot: SessionSnapshot
    offer_raised: bool = False
    finished_now: bool = False


def rank_players(players: Sequence[Player]) -> List[Player]:
    """Sort by score descending; equal scores keep turn order."""
    return sorted(players, key=lambda p: -p.score)


def evaluate_winners(players: Sequence[Player], target_score: int) -> List[Player]:
    """
    Apply the win rule to a set of scores.

    One or two players: the game ends as soon as anyone reaches the target
    and every player is ranked. Three or more: the game ends once three
    players are at the target and only the podium is ranked.

    Returns:
        The ranked winners, or an empty list if the game goes on
    """
    at_target = [p for p in players if p.score >= target_score]
    if len(players) <= 2:
        if at_target:
            return rank_players(players)
        return []
    if len(at_target) >= PODIUM_SIZE:
        return rank_players(players)[:PODIUM_SIZE]
    return []


class GameStateMachine:
    """Single authoritative owner of a GameSession."""

    def __init__(self):
        self._session = GameSession()
        self._handlers = {
            StartGame: self._start_game,
            SetCurrentQuestion: self._set_current_question,
            AnswerQuestion: self._answer_question,
            ApplyCardEffect: self._apply_card_effect,
            ResolveSharedBonusOffer: self._resolve_shared_bonus_offer,
            RestartGame: self._restart_game,
            ResetToSetup: self._reset_to_setup,
        }

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot.from_session(self._session)

    @property
    def phase(self) -> GamePhase:
        return self._session.phase

    @property
    def generation(self) -> int:
        return self._session.generation

    def dispatch(self, transition: Transition) -> TransitionResult:
        """
        Apply one transition atomically.

        Handlers validate before they mutate, so a rejected transition leaves
        the session untouched.

        Raises:
            GameStateError: If the transition is rejected
        """
        handler = self._handlers.get(type(transition))
        if handler is None:
            raise InvalidTransitionError(f"Unknown transition: {transition!r}")

        was_finished = self._session.game_finished
        offer_raised = handler(transition) or False
        finished_now = self._session.game_finished and not was_finished

        logger.debug(
            f"Transition {type(transition).__name__} applied",
            extra={
                'event_type': 'game_transition',
                'transition': type(transition).__name__,
                'phase': self._session.phase.value,
                'current_player_index': self._session.current_player_index,
                'offer_pending': self._session.pending_shared_bonus_offer,
                'timestamp': time.time()
            }
        )
        if finished_now:
            logger.info(
                f"Game finished, winners: {[p.name for p in self._session.winners]}",
                extra={
                    'event_type': 'game_finished',
                    'winner_ids': [p.id for p in self._session.winners],
                    'timestamp': time.time()
                }
            )
        return TransitionResult(self.snapshot(), offer_raised, finished_now)

    # Named wrappers

    def start_game(self, players: Sequence[Player], target_score: int) -> TransitionResult:
        return self.dispatch(StartGame(tuple(players), target_score))

    def set_current_question(self, question: Question) -> TransitionResult:
        return self.dispatch(SetCurrentQuestion(question))

    def answer_question(self, is_correct: bool) -> TransitionResult:
        return self.dispatch(AnswerQuestion(is_correct))

    def apply_card_effect(self, effect: CardEffect) -> TransitionResult:
        return self.dispatch(ApplyCardEffect(effect))

    def resolve_shared_bonus_offer(self, target_player_id: Optional[int] = None) -> TransitionResult:
        return self.dispatch(ResolveSharedBonusOffer(target_player_id))

    def restart_game(self) -> TransitionResult:
        return self.dispatch(RestartGame())

    def reset_to_setup(self) -> TransitionResult:
        return self.dispatch(ResetToSetup())

    # Guards

    def _require_in_progress(self, action: str) -> None:
        if self._session.phase is not GamePhase.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Cannot {action}: game is {self._session.phase.value}"
            )

    def _require_no_offer(self, action: str) -> None:
        if self._session.pending_shared_bonus_offer:
            raise InvalidTransitionError(
                f"Cannot {action}: a shared bonus offer is awaiting a decision"
            )

    def _current_player(self) -> Player:
        return self._session.players[self._session.current_player_index]

    def _find_player(self, player_id: int) -> Optional[Player]:
        for player in self._session.players:
            if player.id == player_id:
                return player
        return None

    # Shared steps

    def _advance_turn(self) -> None:
        s = self._session
        s.current_player_index = (s.current_player_index + 1) % len(s.players)

    def _check_win(self) -> None:
        s = self._session
        winners = evaluate_winners(s.players, s.target_score)
        if winners:
            s.phase = GamePhase.FINISHED
            s.game_finished = True
            s.winners = winners
            # A win supersedes an undecided offer
            s.pending_shared_bonus_offer = False
            s.offer_player_id = None

    def _zero_progress(self) -> None:
        s = self._session
        for player in s.players:
            player.score = 0
        s.current_player_index = 0
        s.current_question = None
        s.used_question_ids = {p.id: set() for p in s.players}
        s.consecutive_correct = {p.id: 0 for p in s.players}
        s.pending_shared_bonus_offer = False
        s.offer_player_id = None
        s.game_finished = False
        s.winners = []

    # Handlers

    def _start_game(self, transition: StartGame) -> None:
        if self._session.phase is not GamePhase.SETUP:
            raise InvalidTransitionError(
                f"Cannot start a game that is {self._session.phase.value}"
            )
        if not transition.players:
            raise InvalidTransitionError("Cannot start a game without players")

        s = self._session
        s.players = [Player(p.id, p.name, p.tier) for p in transition.players]
        s.target_score = transition.target_score
        self._zero_progress()
        s.phase = GamePhase.IN_PROGRESS
        logger.info(
            f"Game started with {len(s.players)} players, target {s.target_score}",
            extra={
                'event_type': 'game_started',
                'player_count': len(s.players),
                'target_score': s.target_score,
                'generation': s.generation,
                'timestamp': time.time()
            }
        )

    def _set_current_question(self, transition: SetCurrentQuestion) -> None:
        self._require_in_progress("set a question")
        self._require_no_offer("set a question")

        player = self._current_player()
        used = self._session.used_question_ids.setdefault(player.id, set())
        question_id = transition.question.id
        if question_id in used:
            raise DuplicateQuestionError(player.id, question_id)

        used.add(question_id)
        self._session.current_question = transition.question

    def _answer_question(self, transition: AnswerQuestion) -> bool:
        self._require_in_progress("answer")
        self._require_no_offer("answer")

        s = self._session
        player = self._current_player()
        if transition.is_correct:
            player.score += 1
            s.consecutive_correct[player.id] = s.consecutive_correct.get(player.id, 0) + 1
        else:
            s.consecutive_correct[player.id] = 0
        player.score = max(0, player.score)

        reached_streak = s.consecutive_correct[player.id] == SHARED_BONUS_STREAK
        offer_raised = reached_streak and len(s.players) > 1
        if reached_streak and not offer_raised:
            # Nobody to share with: the streak closes as if the offer were skipped
            s.consecutive_correct[player.id] = 0
        if offer_raised:
            s.pending_shared_bonus_offer = True
            s.offer_player_id = player.id
        else:
            self._advance_turn()

        self._check_win()
        return offer_raised and s.pending_shared_bonus_offer

    def _apply_card_effect(self, transition: ApplyCardEffect) -> None:
        self._require_in_progress("apply a card")
        self._require_no_offer("apply a card")

        s = self._session
        effect = transition.effect
        player = self._current_player()

        if effect.kind is CardEffectKind.DELTA:
            player.score = max(0, player.score + effect.delta)
        elif effect.kind is CardEffectKind.MIRACLE:
            player.score = max(player.score, s.target_score - 1)
        elif effect.kind is CardEffectKind.REVERSAL:
            self._swap_extremes()

        self._check_win()

    def _swap_extremes(self) -> None:
        players = self._session.players
        if len(players) < 2:
            return
        highest = players[0]
        lowest = players[0]
        for player in players[1:]:
            if player.score > highest.score:
                highest = player
            if player.score < lowest.score:
                lowest = player
        if highest is lowest:
            return
        highest.score, lowest.score = lowest.score, highest.score

    def _resolve_shared_bonus_offer(self, transition: ResolveSharedBonusOffer) -> None:
        self._require_in_progress("resolve a shared bonus offer")
        s = self._session
        if not s.pending_shared_bonus_offer:
            raise InvalidTransitionError("No shared bonus offer is pending")

        target = None
        if transition.target_player_id is not None:
            target = self._find_player(transition.target_player_id)
            if target is None:
                raise UnknownPlayerError(
                    f"Player {transition.target_player_id} is not at this table"
                )

        if target is not None and target.id != s.offer_player_id:
            target.score = max(0, target.score + 1)

        s.consecutive_correct[s.offer_player_id] = 0
        s.pending_shared_bonus_offer = False
        s.offer_player_id = None
        self._advance_turn()
        self._check_win()

    def _restart_game(self, transition: RestartGame) -> None:
        if self._session.phase is GamePhase.SETUP:
            raise InvalidTransitionError("Cannot restart: no game has been started")
        s = self._session
        self._zero_progress()
        s.phase = GamePhase.IN_PROGRESS
        s.generation += 1
        logger.info(
            "Game restarted",
            extra={
                'event_type': 'game_restarted',
                'generation': s.generation,
                'timestamp': time.time()
            }
        )

    def _reset_to_setup(self, transition: ResetToSetup) -> None:
        generation = self._session.generation + 1
        self._session = GameSession(generation=generation)
        logger.info(
            "Game reset to setup",
            extra={
                'event_type': 'game_reset',
                'generation': generation,
                'timestamp': time.time()
            }
        )

    def standings(self) -> Dict[str, List[Dict[str, object]]]:
        """Final ranking with the podium split out."""
        ranked = rank_players(self._session.players)
        rows = [
            {'rank': i + 1, 'id': p.id, 'name': p.name, 'tier': p.tier.value, 'score': p.score}
            for i, p in enumerate(ranked)
        ]
        return {'podium': rows[:PODIUM_SIZE], 'standings': rows}
