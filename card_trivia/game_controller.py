"""
Table controller for the card trivia bot.
Runs one pass-and-play table per Discord channel: lobby, question
presentation, event cards, answer feedback and the shared bonus offer.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .answer_shuffler import AnswerLayout, AnswerShuffler
from .card_resolver import CardContext, CardDraw, CardResolver, RevelationSafetyError
from .config_manager import ConfigManager
from .game_state import (
    DuplicateQuestionError,
    GameStateError,
    GameStateMachine,
    InvalidTransitionError,
    TransitionResult,
    UnknownPlayerError,
)
from .models import GamePhase, SessionSnapshot, Tier
from .question_supply import ExhaustedQuestionPool, QuestionSupply
from .scheduler import EffectScheduler

# Scheduled effect names
CARD_CHECK = "card_check"
CARD_DISMISS = "card_dismiss"
CARD_RESOLVE = "card_resolve"
ANSWER_FEEDBACK = "answer_feedback"

EventHandler = Callable[[int, str, Dict[str, Any]], Awaitable[None]]


class TableState(Enum):
    """Enumeration of possible table states."""
    INACTIVE = "inactive"
    LOBBY = "lobby"
    PLAYING = "playing"
    AWAITING_OFFER = "awaiting_offer"
    BLOCKED = "blocked"
    FINISHED = "finished"


class GameControllerError(Exception):
    """Base exception for game controller errors."""
    pass


class TableConflictError(GameControllerError):
    """Raised when a lobby is opened over a game in progress."""
    pass


class TableNotFoundError(GameControllerError):
    """Raised when operating on a channel without a table."""
    pass


@dataclass
class LobbyEntry:
    name: str
    tier: Tier


@dataclass
class GameTable:
    """Everything one channel's game needs besides the session itself."""
    channel_id: int
    target_score: int
    machine: GameStateMachine = field(default_factory=GameStateMachine)
    lobby: List[LobbyEntry] = field(default_factory=list)
    layout: Optional[AnswerLayout] = None
    eliminated: List[int] = field(default_factory=list)
    card_showing: bool = False
    card_resolving: bool = False
    active_card: Optional[CardDraw] = None
    awaiting_feedback: bool = False
    blocked_reason: Optional[str] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def clear_turn_state(self) -> None:
        self.layout = None
        self.eliminated = []
        self.card_showing = False
        self.card_resolving = False
        self.active_card = None
        self.awaiting_feedback = False
        self.blocked_reason = None


class GameController:
    """
    Orchestrates card trivia tables across Discord channels.

    Each channel holds at most one table. Players sit at the same table and
    take turns; the controller draws their questions, shuffles answers,
    checks for event cards and feeds every score change to the table's
    GameStateMachine. Presentation happens through the event handler.
    """

    def __init__(
        self,
        question_supply: QuestionSupply,
        config_manager: ConfigManager,
        event_handler: Optional[EventHandler] = None,
        rng: Optional[random.Random] = None
    ):
        """
        Initialize the game controller.

        Args:
            question_supply: Loaded question bank
            config_manager: Setup validation and timings
            event_handler: Coroutine called as handler(channel_id, event, payload)
            rng: Random source shared by the shuffler and the card resolver
        """
        self.logger = logging.getLogger(__name__)
        self.question_supply = question_supply
        self.config_manager = config_manager
        self.shuffler = AnswerShuffler(rng)
        self.card_resolver = CardResolver(rng)
        self.scheduler = EffectScheduler(self._table_generation)
        self._event_handler = event_handler

        # Tables mapped by channel ID
        self._tables: Dict[int, GameTable] = {}

        self.logger.info("GameController initialized")

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        self._event_handler = handler

    def _table_generation(self, channel_id: int) -> Optional[int]:
        table = self._tables.get(channel_id)
        return table.machine.generation if table else None

    def get_table(self, channel_id: int) -> Optional[GameTable]:
        return self._tables.get(channel_id)

    def has_table(self, channel_id: int) -> bool:
        return channel_id in self._tables

    def get_table_state(self, channel_id: int) -> TableState:
        """
        Get the current state of a channel's table.

        Args:
            channel_id: Discord channel identifier

        Returns:
            Current table state
        """
        table = self._tables.get(channel_id)
        if table is None:
            return TableState.INACTIVE

        snapshot = table.machine.snapshot()
        if snapshot.phase is GamePhase.SETUP:
            return TableState.LOBBY
        if snapshot.phase is GamePhase.FINISHED:
            return TableState.FINISHED
        if snapshot.pending_shared_bonus_offer:
            return TableState.AWAITING_OFFER
        if table.blocked_reason:
            return TableState.BLOCKED
        return TableState.PLAYING

    # Lobby

    def open_lobby(self, channel_id: int, target_score: Optional[int] = None) -> Dict[str, Any]:
        """
        Open a lobby for a new game in the channel.

        A finished game is discarded; a game in progress must be stopped first.
        Reopening an existing lobby only changes its target score.
        """
        try:
            table = self._tables.get(channel_id)
            if table is not None and table.machine.phase is GamePhase.IN_PROGRESS:
                raise TableConflictError(f"Channel {channel_id} already has a game in progress")

            if target_score is None:
                target_score = self.config_manager.get_game_settings().default_target_score
            validation = self.config_manager.validate_target_score(target_score)
            if not validation['success']:
                return validation

            if table is not None and table.machine.phase is GamePhase.SETUP:
                table.target_score = target_score
            else:
                if table is not None:
                    self.scheduler.cancel_owner(channel_id, "lobby reopened")
                table = GameTable(channel_id=channel_id, target_score=target_score)
                self._tables[channel_id] = table

            self.logger.info(
                f"Lobby open for channel {channel_id}, target {target_score}",
                extra={
                    'event_type': 'lobby_opened',
                    'channel_id': channel_id,
                    'target_score': target_score,
                    'timestamp': time.time()
                }
            )
            return {
                'success': True,
                'message': f"Lobby open with target {target_score}",
                'user_message': f"🃏 New table! First to {target_score} points. Add players to begin.",
                'target_score': target_score
            }
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "open lobby")

    def add_player(self, channel_id: int, name: str, tier: Any) -> Dict[str, Any]:
        try:
            table = self._require_lobby(channel_id)

            count_check = self.config_manager.validate_player_count(len(table.lobby) + 1)
            if not count_check['success']:
                return count_check
            name_check = self.config_manager.validate_player_name(name)
            if not name_check['success']:
                return name_check
            tier_check = self.config_manager.validate_tier(tier)
            if not tier_check['success']:
                return tier_check

            # /share and /leave pick players by name
            seated = name_check['value'].lower()
            if any(e.name.lower() == seated for e in table.lobby):
                return {
                    'success': False,
                    'error': f"Duplicate player name: {name_check['value']}",
                    'user_message': f"❌ {name_check['value']} is already at the table. Pick another name."
                }

            entry = LobbyEntry(name_check['value'], tier_check['value'])
            table.lobby.append(entry)
            self.logger.info(f"Player {entry.name} ({entry.tier.value}) joined lobby in channel {channel_id}")
            return {
                'success': True,
                'message': f"Added {entry.name}",
                'user_message': f"✅ {entry.name} joins at {entry.tier.value} level",
                'player_count': len(table.lobby)
            }
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "add player")

    def remove_player(self, channel_id: int, name: str) -> Dict[str, Any]:
        try:
            table = self._require_lobby(channel_id)
            wanted = (name or "").strip().lower()
            for i, entry in enumerate(table.lobby):
                if entry.name.lower() == wanted:
                    del table.lobby[i]
                    self.logger.info(f"Player {entry.name} left lobby in channel {channel_id}")
                    return {
                        'success': True,
                        'message': f"Removed {entry.name}",
                        'user_message': f"👋 {entry.name} left the table",
                        'player_count': len(table.lobby)
                    }
            return {
                'success': False,
                'error': f"No player named {name!r} in lobby",
                'user_message': f"❌ Nobody called {name} is seated"
            }
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "remove player")

    def _require_table(self, channel_id: int) -> GameTable:
        table = self._tables.get(channel_id)
        if table is None:
            raise TableNotFoundError(f"No table in channel {channel_id}")
        return table

    def _require_lobby(self, channel_id: int) -> GameTable:
        table = self._require_table(channel_id)
        if table.machine.phase is not GamePhase.SETUP:
            raise TableConflictError(f"Game in channel {channel_id} has already started")
        return table

    # Game flow

    async def start_game(self, channel_id: int) -> Dict[str, Any]:
        """
        Validate the lobby, start the game and present the first question.

        Returns:
            Result dictionary; 'presentation' holds the first question's result
        """
        try:
            table = self._require_lobby(channel_id)
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "start game")

        async with table.lock:
            setup = self.config_manager.validate_setup(
                table.target_score,
                [(entry.name, entry.tier) for entry in table.lobby]
            )
            if not setup['success']:
                return setup

            try:
                result = table.machine.start_game(setup['players'], setup['target_score'])
            except GameStateError as e:
                return self._handle_table_error(channel_id, e, "start game")

            table.clear_turn_state()
            self.question_supply.reset_draw_order()
            await self._notify(table, 'game_started', {'snapshot': result.snapshot})
            presentation = await self._present_next(table)

        return {
            'success': True,
            'message': f"Game started in channel {channel_id}",
            'user_message': setup['user_message'],
            'snapshot': result.snapshot,
            'presentation': presentation
        }

    async def present_next_question(self, channel_id: int) -> Dict[str, Any]:
        """Present the current player's next question, e.g. after reloading questions."""
        try:
            table = self._require_table(channel_id)
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "present question")
        async with table.lock:
            return await self._present_next(table)

    async def _present_next(self, table: GameTable) -> Dict[str, Any]:
        snapshot = table.machine.snapshot()
        if snapshot.phase is not GamePhase.IN_PROGRESS:
            return self._failure("Game is not in progress", "❌ No game is running here")
        if snapshot.pending_shared_bonus_offer:
            return self._failure("Shared bonus offer pending", "⏳ Decide on the shared bonus first")
        if table.awaiting_feedback:
            return self._failure("Answer feedback pending", "⏳ Wait for the next turn")

        player = snapshot.current_player
        used = snapshot.used_question_ids.get(player.id, frozenset())
        try:
            question = self.question_supply.next_question_for(player.name, player.tier, used)
            result = table.machine.set_current_question(question)
        except ExhaustedQuestionPool as e:
            table.blocked_reason = str(e)
            self.logger.warning(
                f"Question pool exhausted in channel {table.channel_id}: {e}",
                extra={
                    'event_type': 'pool_exhausted',
                    'channel_id': table.channel_id,
                    'player_id': player.id,
                    'tier': player.tier.value,
                    'timestamp': time.time()
                }
            )
            await self._notify(table, 'pool_exhausted', {
                'snapshot': snapshot,
                'player': player,
                'tier': player.tier
            })
            return self._failure(str(e), f"📭 No {player.tier.value} questions left for {player.name}")
        except DuplicateQuestionError as e:
            self.logger.error(f"Duplicate question in channel {table.channel_id}: {e}")
            return self._failure(str(e), "❌ Could not pick a fresh question")

        table.blocked_reason = None
        table.layout = self.shuffler.shuffle(question, player.tier)
        table.eliminated = []

        self.logger.debug(
            f"Presented question {question.id} to {player.name} in channel {table.channel_id}",
            extra={
                'event_type': 'question_presented',
                'channel_id': table.channel_id,
                'player_id': player.id,
                'question_id': question.id,
                'timestamp': time.time()
            }
        )
        await self._notify(table, 'question_presented', {
            'snapshot': result.snapshot,
            'player': player,
            'question': question,
            'answers': table.layout.displayed_answers(question),
        })

        settings = self.config_manager.get_game_settings()
        channel_id = table.channel_id
        generation = table.machine.generation
        self.scheduler.schedule(
            channel_id, generation, CARD_CHECK, settings.card_check_delay,
            lambda: self._run_card_check(channel_id, generation, question.id)
        )
        return {
            'success': True,
            'message': f"Question {question.id} presented",
            'question': question,
            'player': player
        }

    # Cards

    def _live_table(self, channel_id: int, generation: int) -> Optional[GameTable]:
        table = self._tables.get(channel_id)
        if table is None or table.machine.generation != generation:
            return None
        return table

    async def _run_card_check(self, channel_id: int, generation: int, question_id: int) -> None:
        table = self._live_table(channel_id, generation)
        if table is None:
            return
        async with table.lock:
            if table.machine.generation != generation:
                return
            await self._check_for_card(table, question_id)

    async def _check_for_card(self, table: GameTable, question_id: int) -> Optional[CardDraw]:
        snapshot = table.machine.snapshot()
        question = snapshot.current_question
        if (snapshot.phase is not GamePhase.IN_PROGRESS or question is None
                or question.id != question_id or table.layout is None
                or table.awaiting_feedback):
            return None

        player = snapshot.current_player
        context = CardContext(
            tier=player.tier,
            question_kind=question.kind,
            correct_answer=question.correct_answer,
            layout=table.layout,
            player_count=len(snapshot.players),
            consecutive_correct=snapshot.consecutive_correct.get(player.id, 0),
            card_showing=table.card_showing,
            card_resolving=table.card_resolving,
            offer_pending=snapshot.pending_shared_bonus_offer,
        )
        card = self.card_resolver.resolve(context)
        if card is not None:
            await self._play_card(table, card)
        return card

    async def _play_card(self, table: GameTable, card: CardDraw) -> None:
        channel_id = table.channel_id
        generation = table.machine.generation
        table.card_showing = True
        table.card_resolving = True
        table.active_card = card

        result: Optional[TransitionResult] = None
        if card.effect is not None:
            result = table.machine.apply_card_effect(card.effect)
        snapshot = result.snapshot if result else table.machine.snapshot()

        await self._notify(table, 'card_drawn', {'snapshot': snapshot, 'card': card})

        if result is not None and result.finished_now:
            await self._finish(table, snapshot)
            return

        settings = self.config_manager.get_game_settings()
        resolve_delay = settings.revelation_delay if card.is_delayed else settings.card_lock_duration
        self.scheduler.schedule(
            channel_id, generation, CARD_DISMISS, settings.card_display_duration,
            lambda: self._dismiss_card(channel_id, generation)
        )
        self.scheduler.schedule(
            channel_id, generation, CARD_RESOLVE, resolve_delay,
            lambda: self._resolve_card(channel_id, generation, card)
        )

    async def _dismiss_card(self, channel_id: int, generation: int) -> None:
        table = self._live_table(channel_id, generation)
        if table is None:
            return
        async with table.lock:
            if table.card_showing:
                table.card_showing = False
                await self._notify(table, 'card_dismissed', {})

    async def _resolve_card(self, channel_id: int, generation: int, card: CardDraw) -> None:
        table = self._live_table(channel_id, generation)
        if table is None:
            return
        async with table.lock:
            await self._complete_card(table, card)

    async def _complete_card(self, table: GameTable, card: CardDraw) -> None:
        if table.active_card is not card:
            return
        if card.is_delayed:
            await self._apply_revelation(table, card)
        table.card_resolving = False
        table.active_card = None

    async def _apply_revelation(self, table: GameTable, card: CardDraw) -> None:
        question = table.machine.snapshot().current_question
        if question is None or card.layout is None or question.id != card.layout.question_id:
            self.logger.warning(f"Revelation skipped in channel {table.channel_id}: question changed")
            return

        try:
            eliminated = self.card_resolver.eliminate_answers(card)
        except RevelationSafetyError as e:
            self.logger.error(
                f"Revelation aborted in channel {table.channel_id}: {e}",
                extra={
                    'event_type': 'revelation_aborted',
                    'channel_id': table.channel_id,
                    'question_id': question.id,
                    'timestamp': time.time()
                }
            )
            return

        table.eliminated = eliminated
        await self._notify(table, 'answers_eliminated', {
            'question': question,
            'positions': eliminated
        })

    async def _flush_card(self, table: GameTable) -> None:
        """Settle any card business before an answer is scored."""
        channel_id = table.channel_id
        generation = table.machine.generation
        self.scheduler.cancel(channel_id, generation, CARD_CHECK, "answer submitted")
        card = table.active_card
        if card is not None:
            self.scheduler.cancel(channel_id, generation, CARD_RESOLVE, "flushed by answer")
            await self._complete_card(table, card)

    def _drop_card(self, table: GameTable, reason: str) -> None:
        channel_id = table.channel_id
        generation = table.machine.generation
        for name in (CARD_CHECK, CARD_DISMISS, CARD_RESOLVE):
            self.scheduler.cancel(channel_id, generation, name, reason)
        table.card_showing = False
        table.card_resolving = False
        table.active_card = None

    # Answers and offers

    async def submit_answer(self, channel_id: int, display_position: int) -> Dict[str, Any]:
        """
        Answer the current question.

        Correctness is reported immediately; the score changes and the next
        turn starts once the feedback delay has passed.

        Args:
            channel_id: Discord channel identifier
            display_position: Position of the chosen answer as shown

        Returns:
            Result dictionary with 'is_correct' and 'correct_position'
        """
        try:
            table = self._require_table(channel_id)
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "submit answer")

        async with table.lock:
            snapshot = table.machine.snapshot()
            if snapshot.phase is not GamePhase.IN_PROGRESS:
                return self._failure("Game is not in progress", "❌ No game is running here")
            if snapshot.pending_shared_bonus_offer:
                return self._failure("Shared bonus offer pending", "⏳ Decide on the shared bonus first")
            if table.awaiting_feedback:
                return self._failure("Answer already submitted", "⏳ This question was already answered")

            question = snapshot.current_question
            if question is None or table.layout is None:
                return self._failure("No question presented", "❌ There is no question to answer")
            if not 0 <= display_position < len(question.answers):
                return self._failure(
                    f"Answer position {display_position} out of range",
                    "❌ That answer does not exist"
                )
            if display_position in table.eliminated:
                return self._failure(
                    f"Answer position {display_position} was eliminated",
                    "❌ That answer was eliminated"
                )

            await self._flush_card(table)

            layout = table.layout
            is_correct = layout.is_correct(question, display_position)
            settings = self.config_manager.get_game_settings()
            delay = settings.correct_feedback_delay if is_correct else settings.wrong_feedback_delay
            table.awaiting_feedback = True

            generation = table.machine.generation
            self.scheduler.schedule(
                channel_id, generation, ANSWER_FEEDBACK, delay,
                lambda: self._apply_answer(channel_id, generation, is_correct)
            )

            player = snapshot.current_player
            self.logger.info(
                f"{player.name} answered question {question.id} "
                f"{'correctly' if is_correct else 'incorrectly'} in channel {channel_id}",
                extra={
                    'event_type': 'answer_submitted',
                    'channel_id': channel_id,
                    'player_id': player.id,
                    'question_id': question.id,
                    'is_correct': is_correct,
                    'timestamp': time.time()
                }
            )
            return {
                'success': True,
                'is_correct': is_correct,
                'chosen_position': display_position,
                'correct_position': layout.display_position(question.correct_answer),
                'correct_answer': question.answers[question.correct_answer],
                'player': player,
                'message': f"Answer recorded for {player.name}"
            }

    async def _apply_answer(self, channel_id: int, generation: int, is_correct: bool) -> None:
        table = self._live_table(channel_id, generation)
        if table is None:
            return
        async with table.lock:
            table.awaiting_feedback = False
            try:
                result = table.machine.answer_question(is_correct)
            except GameStateError as e:
                self.logger.error(f"Answer rejected in channel {channel_id}: {e}")
                return

            table.layout = None
            table.eliminated = []
            await self._after_turn(table, result)

    async def resolve_shared_bonus(self, channel_id: int, target_player_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Give the shared bonus point to another player, or skip with None.
        """
        try:
            table = self._require_table(channel_id)
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "resolve shared bonus")

        async with table.lock:
            before = table.machine.snapshot()
            try:
                result = table.machine.resolve_shared_bonus_offer(target_player_id)
            except UnknownPlayerError as e:
                return self._failure(str(e), "❌ That player is not at this table")
            except InvalidTransitionError as e:
                return self._failure(str(e), "❌ There is no bonus to share right now")

            giver = before.player(before.offer_player_id)
            target = result.snapshot.player(target_player_id) if target_player_id is not None else None
            if target is not None and target.id != giver.id:
                user_message = f"🎁 {giver.name} shares a point with {target.name}!"
            else:
                user_message = f"{giver.name} keeps the streak bonus to themselves"

            self.logger.info(
                f"Shared bonus resolved in channel {channel_id}",
                extra={
                    'event_type': 'shared_bonus_resolved',
                    'channel_id': channel_id,
                    'offer_player_id': giver.id,
                    'target_player_id': target_player_id,
                    'timestamp': time.time()
                }
            )
            await self._after_turn(table, result)

        return {
            'success': True,
            'message': "Shared bonus resolved",
            'user_message': user_message,
            'snapshot': result.snapshot
        }

    async def _after_turn(self, table: GameTable, result: TransitionResult) -> None:
        if result.finished_now:
            await self._finish(table, result.snapshot)
            return

        if result.offer_raised:
            self._drop_card(table, "shared bonus offer")
            offer_player = result.snapshot.player(result.snapshot.offer_player_id)
            await self._notify(table, 'shared_bonus_offer', {
                'snapshot': result.snapshot,
                'player': offer_player,
                'candidates': [p for p in result.snapshot.players if p.id != offer_player.id]
            })
            return

        await self._present_next(table)

    async def _finish(self, table: GameTable, snapshot: SessionSnapshot) -> None:
        self.scheduler.cancel_owner(table.channel_id, "game finished")
        table.clear_turn_state()
        await self._notify(table, 'game_finished', {
            'snapshot': snapshot,
            'winners': list(snapshot.winners),
            **table.machine.standings()
        })

    # Lifecycle

    async def restart_game(self, channel_id: int) -> Dict[str, Any]:
        """Replay with the same players: scores and history cleared, pending effects cancelled."""
        try:
            table = self._require_table(channel_id)
        except GameControllerError as e:
            return self._handle_table_error(channel_id, e, "restart game")

        async with table.lock:
            try:
                result = table.machine.restart_game()
            except InvalidTransitionError as e:
                return self._failure(str(e), "❌ Start a game before restarting it")

            cancelled = self.scheduler.cancel_owner(channel_id, "game restarted")
            table.clear_turn_state()
            self.question_supply.reset_draw_order()
            await self._notify(table, 'game_started', {'snapshot': result.snapshot})
            presentation = await self._present_next(table)

        return {
            'success': True,
            'message': f"Game restarted in channel {channel_id}",
            'user_message': "🔄 Same players, fresh scores. Good luck!",
            'cancelled_effects': cancelled,
            'presentation': presentation
        }

    async def stop_game(self, channel_id: int) -> Dict[str, Any]:
        """
        Discard the channel's table entirely.

        Returns:
            Result dictionary with the number of cancelled effects
        """
        table = self._tables.get(channel_id)
        if table is None:
            self.logger.warning(
                f"Cannot stop table for channel {channel_id}: no table exists",
                extra={
                    'event_type': 'table_stop_no_table',
                    'channel_id': channel_id,
                    'timestamp': time.time()
                }
            )
            return self._failure(f"No table in channel {channel_id}", "❌ There is no game to stop")

        async with table.lock:
            cancelled = self.scheduler.cancel_owner(channel_id, "game stopped")
            table.machine.reset_to_setup()
            table.clear_turn_state()
            if self._tables.get(channel_id) is table:
                del self._tables[channel_id]

        self.logger.info(
            f"Stopped table for channel {channel_id}, effects cancelled: {cancelled}",
            extra={
                'event_type': 'table_stopped',
                'channel_id': channel_id,
                'effects_cancelled': cancelled,
                'timestamp': time.time()
            }
        )
        return {
            'success': True,
            'message': f"Table stopped in channel {channel_id}",
            'user_message': "🛑 Game stopped",
            'cancelled_effects': cancelled
        }

    async def shutdown(self) -> None:
        """Cancel every table's pending effects."""
        cancelled = self.scheduler.cancel_all("controller shutdown")
        self._tables.clear()
        self.logger.info(f"GameController shut down, {cancelled} effects cancelled")

    async def settle(self, channel_id: int) -> None:
        """Wait for every pending effect of the channel, including follow-ups."""
        await self.scheduler.join(channel_id)

    async def reload_questions(self) -> Dict[str, Any]:
        questions = await self.question_supply.load_all()
        summary = self.question_supply.get_loading_summary()
        return {
            'success': bool(questions),
            'message': f"Loaded {len(questions)} questions",
            'user_message': f"📚 {len(questions)} questions loaded",
            'summary': summary
        }

    # Queries

    def get_table_status(self, channel_id: int) -> Optional[Dict[str, Any]]:
        """
        Get status information for a channel's table.

        Returns:
            Dictionary with table info, None if the channel has no table
        """
        table = self._tables.get(channel_id)
        if table is None:
            return None

        snapshot = table.machine.snapshot()
        current = snapshot.current_player
        return {
            'state': self.get_table_state(channel_id).value,
            'phase': snapshot.phase.value,
            'target_score': snapshot.target_score if snapshot.players else table.target_score,
            'lobby': [{'name': e.name, 'tier': e.tier.value} for e in table.lobby],
            'players': [
                {
                    'id': p.id,
                    'name': p.name,
                    'tier': p.tier.value,
                    'score': p.score,
                    'streak': snapshot.consecutive_correct.get(p.id, 0)
                }
                for p in snapshot.players
            ],
            'current_player': current.name if current else None,
            'card_showing': table.card_showing,
            'card_resolving': table.card_resolving,
            'active_card': table.active_card.card_type.value if table.active_card else None,
            'offer_pending': snapshot.pending_shared_bonus_offer,
            'awaiting_feedback': table.awaiting_feedback,
            'eliminated': list(table.eliminated),
            'blocked_reason': table.blocked_reason,
            'pending_effects': self.scheduler.pending_names(channel_id),
            'generation': snapshot.generation
        }

    def get_results(self, channel_id: int) -> Optional[Dict[str, Any]]:
        table = self._tables.get(channel_id)
        if table is None or not table.machine.snapshot().players:
            return None
        snapshot = table.machine.snapshot()
        return {
            'finished': snapshot.game_finished,
            'winners': list(snapshot.winners),
            **table.machine.standings()
        }

    # Helpers

    async def _notify(self, table: GameTable, event: str, payload: Dict[str, Any]) -> None:
        if self._event_handler is None:
            return
        try:
            await self._event_handler(table.channel_id, event, payload)
        except Exception as e:
            self.logger.error(
                f"Event handler failed for {event} in channel {table.channel_id}: {e}",
                extra={
                    'event_type': 'event_handler_error',
                    'channel_id': table.channel_id,
                    'event': event,
                    'error_type': type(e).__name__,
                    'timestamp': time.time()
                },
                exc_info=True
            )

    def _failure(self, error: str, user_message: str) -> Dict[str, Any]:
        return {
            'success': False,
            'error': error,
            'user_message': user_message
        }

    def _handle_table_error(self, channel_id: int, error: Exception, operation: str) -> Dict[str, Any]:
        """
        Log a failed operation and build its result dictionary.

        Args:
            channel_id: Discord channel identifier
            error: The exception that occurred
            operation: Description of the operation that failed
        """
        self.logger.error(f"Error in {operation} for channel {channel_id}: {error}")
        return {
            'success': False,
            'error': str(error),
            'operation': operation,
            'user_message': self._get_user_friendly_error_message(error, operation)
        }

    def _get_user_friendly_error_message(self, error: Exception, operation: str) -> str:
        if isinstance(error, TableNotFoundError):
            return "❌ No table here yet. Use `/new_game` to open one."
        if isinstance(error, TableConflictError):
            return "❌ A game is already running in this channel. Use `/stop` first."
        if isinstance(error, GameStateError):
            return f"❌ Cannot {operation} right now."
        return f"❌ Something went wrong while trying to {operation}."


