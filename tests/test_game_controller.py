"""
Tests for GameController table orchestration.
"""
import unittest
import asyncio
import random
import logging
import tempfile
from pathlib import Path
from unittest.mock import Mock

from card_trivia.card_resolver import CardDraw, CardType
from card_trivia.config_manager import ConfigManager
from card_trivia.game_controller import GameController, TableState
from card_trivia.game_state import CardEffect
from card_trivia.models import Tier
from tests.test_fixtures import EventRecorder, TestFixtures, async_test

CHANNEL = 555


class ControllerTestCase(unittest.TestCase):
    """Shared setup: zero delays and no random cards unless a test plays one."""

    def setUp(self):
        logging.disable(logging.CRITICAL)
        self.recorder = EventRecorder()

    def tearDown(self):
        logging.disable(logging.NOTSET)

    def make_controller(self, questions=None, config_manager=None):
        controller = GameController(
            TestFixtures.create_question_supply(questions),
            config_manager or TestFixtures.create_fast_config_manager(),
            self.recorder,
            rng=random.Random(5)
        )
        controller.card_resolver.resolve = Mock(return_value=None)
        return controller

    async def start_table(self, controller, *players, target_score=10):
        controller.open_lobby(CHANNEL, target_score)
        for name, tier in players or (("Ana", "easy"), ("Ben", "medium")):
            controller.add_player(CHANNEL, name, tier)
        result = await controller.start_game(CHANNEL)
        self.assertTrue(result['success'], result.get('error'))
        return controller.get_table(CHANNEL)

    def current_question(self, controller):
        return controller.get_table(CHANNEL).machine.snapshot().current_question

    def correct_position(self, controller):
        table = controller.get_table(CHANNEL)
        return table.layout.display_position(self.current_question(controller).correct_answer)

    def wrong_position(self, controller):
        table = controller.get_table(CHANNEL)
        question = self.current_question(controller)
        for position in range(len(question.answers)):
            if not table.layout.is_correct(question, position) and position not in table.eliminated:
                return position
        raise AssertionError("No wrong answer left")

    async def answer(self, controller, correct=True):
        position = self.correct_position(controller) if correct else self.wrong_position(controller)
        result = await controller.submit_answer(CHANNEL, position)
        self.assertTrue(result['success'], result.get('error'))
        await controller.settle(CHANNEL)
        return result

    def scores(self, controller):
        return {p['name']: p['score'] for p in controller.get_table_status(CHANNEL)['players']}


class TestLobby(ControllerTestCase):

    @async_test
    async def test_open_lobby_uses_default_target(self):
        controller = self.make_controller()
        result = controller.open_lobby(CHANNEL)

        self.assertTrue(result['success'])
        self.assertEqual(result['target_score'], 10)
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.LOBBY)

    @async_test
    async def test_reopening_lobby_changes_target_only(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)
        controller.add_player(CHANNEL, "Ana", "easy")

        controller.open_lobby(CHANNEL, 20)

        status = controller.get_table_status(CHANNEL)
        self.assertEqual(status['target_score'], 20)
        self.assertEqual(status['lobby'], [{'name': "Ana", 'tier': "easy"}])

    @async_test
    async def test_invalid_target_rejected(self):
        controller = self.make_controller()
        self.assertFalse(controller.open_lobby(CHANNEL, 2)['success'])
        self.assertFalse(controller.has_table(CHANNEL))

    @async_test
    async def test_add_and_remove_players(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)

        self.assertEqual(controller.add_player(CHANNEL, "Ana", "easy")['player_count'], 1)
        self.assertEqual(controller.add_player(CHANNEL, "Ben", "hard")['player_count'], 2)
        self.assertFalse(controller.add_player(CHANNEL, "Cy", "legendary")['success'])
        self.assertFalse(controller.add_player(CHANNEL, "", "easy")['success'])

        self.assertEqual(controller.remove_player(CHANNEL, "ana")['player_count'], 1)
        self.assertFalse(controller.remove_player(CHANNEL, "Zed")['success'])

    @async_test
    async def test_duplicate_name_rejected(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)
        controller.add_player(CHANNEL, "Sam", "easy")

        result = controller.add_player(CHANNEL, " sam ", "hard")

        self.assertFalse(result['success'])
        self.assertIn("already at the table", result['user_message'])
        self.assertEqual(controller.get_table_status(CHANNEL)['lobby'], [{'name': "Sam", 'tier': "easy"}])

    @async_test
    async def test_lobby_is_capped(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)
        for i in range(8):
            self.assertTrue(controller.add_player(CHANNEL, f"P{i}", "easy")['success'])
        self.assertFalse(controller.add_player(CHANNEL, "P8", "easy")['success'])

    @async_test
    async def test_join_without_table(self):
        controller = self.make_controller()
        result = controller.add_player(CHANNEL, "Ana", "easy")
        self.assertFalse(result['success'])
        self.assertIn("/new_game", result['user_message'])

    @async_test
    async def test_cannot_reopen_over_running_game(self):
        controller = self.make_controller()
        await self.start_table(controller)

        result = controller.open_lobby(CHANNEL)

        self.assertFalse(result['success'])
        self.assertIn("/stop", result['user_message'])
        self.assertFalse(controller.add_player(CHANNEL, "Late", "easy")['success'])
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_start_with_empty_lobby_fails(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)

        result = await controller.start_game(CHANNEL)

        self.assertFalse(result['success'])
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.LOBBY)


class TestTurns(ControllerTestCase):

    @async_test
    async def test_start_presents_first_question(self):
        controller = self.make_controller()
        await self.start_table(controller)
        await controller.settle(CHANNEL)

        self.assertEqual(self.recorder.names()[:2], ['game_started', 'question_presented'])
        presented = self.recorder.last('question_presented')
        self.assertEqual(presented['player'].name, "Ana")
        self.assertEqual(presented['question'].tier, Tier.EASY)
        self.assertEqual(len(presented['answers']), len(presented['question'].answers))

        status = controller.get_table_status(CHANNEL)
        self.assertEqual(status['state'], 'playing')
        self.assertEqual(status['current_player'], "Ana")
        controller.card_resolver.resolve.assert_called_once()

    @async_test
    async def test_correct_answer_scores_after_feedback(self):
        controller = self.make_controller()
        await self.start_table(controller)

        result = await controller.submit_answer(CHANNEL, self.correct_position(controller))

        self.assertTrue(result['is_correct'])
        self.assertEqual(result['player'].name, "Ana")
        self.assertEqual(result['chosen_position'], result['correct_position'])
        # Score changes only once the feedback delay has run
        self.assertEqual(self.scores(controller)["Ana"], 0)
        self.assertTrue(controller.get_table_status(CHANNEL)['awaiting_feedback'])
        second = await controller.submit_answer(CHANNEL, 0)
        self.assertFalse(second['success'])

        await controller.settle(CHANNEL)

        self.assertEqual(self.scores(controller), {"Ana": 1, "Ben": 0})
        self.assertEqual(controller.get_table_status(CHANNEL)['current_player'], "Ben")
        self.assertEqual(self.recorder.last('question_presented')['question'].tier, Tier.MEDIUM)

    @async_test
    async def test_wrong_answer_passes_turn(self):
        controller = self.make_controller()
        await self.start_table(controller)

        result = await self.answer(controller, correct=False)

        self.assertFalse(result['is_correct'])
        self.assertEqual(self.scores(controller), {"Ana": 0, "Ben": 0})
        self.assertEqual(controller.get_table_status(CHANNEL)['current_player'], "Ben")

    @async_test
    async def test_invalid_positions_rejected(self):
        controller = self.make_controller()
        table = await self.start_table(controller)

        self.assertFalse((await controller.submit_answer(CHANNEL, -1))['success'])
        self.assertFalse((await controller.submit_answer(CHANNEL, 4))['success'])

        table.eliminated = [self.wrong_position(controller)]
        result = await controller.submit_answer(CHANNEL, table.eliminated[0])
        self.assertFalse(result['success'])
        self.assertIn("eliminated", result['user_message'])
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_answer_without_table(self):
        controller = self.make_controller()
        result = await controller.submit_answer(CHANNEL, 0)
        self.assertFalse(result['success'])

    @async_test
    async def test_questions_do_not_repeat_for_a_player(self):
        controller = self.make_controller()
        await self.start_table(controller, ("Ana", "easy"))

        for _ in range(4):
            await self.answer(controller, correct=False)

        asked = [payload['question'].id for _, event, payload in self.recorder.events
                 if event == 'question_presented']
        self.assertEqual(len(asked), len(set(asked)))
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_single_player_reaches_target(self):
        controller = self.make_controller()
        await self.start_table(controller, ("Ana", "easy"), target_score=5)

        for _ in range(5):
            await self.answer(controller)

        self.assertNotIn('shared_bonus_offer', self.recorder.names())
        finished = self.recorder.last('game_finished')
        self.assertEqual([w.name for w in finished['winners']], ["Ana"])
        self.assertEqual(finished['podium'][0]['score'], 5)
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.FINISHED)
        self.assertEqual(controller.get_table_status(CHANNEL)['pending_effects'], [])
        self.assertFalse((await controller.submit_answer(CHANNEL, 0))['success'])

    @async_test
    async def test_event_handler_failure_does_not_stop_game(self):
        controller = self.make_controller()

        async def broken(channel_id, event, payload):
            raise RuntimeError("discord is down")

        controller.set_event_handler(broken)
        await self.start_table(controller)

        self.assertEqual(controller.get_table_state(CHANNEL), TableState.PLAYING)
        await controller.stop_game(CHANNEL)


class TestSharedBonus(ControllerTestCase):

    async def reach_offer(self, controller):
        for correct in (True, False, True, False, True):
            await self.answer(controller, correct=correct)

    @async_test
    async def test_third_correct_answer_raises_offer(self):
        controller = self.make_controller()
        await self.start_table(controller)

        await self.reach_offer(controller)

        offer = self.recorder.last('shared_bonus_offer')
        self.assertEqual(offer['player'].name, "Ana")
        self.assertEqual([p.name for p in offer['candidates']], ["Ben"])
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.AWAITING_OFFER)
        self.assertEqual(self.recorder.names()[-1], 'shared_bonus_offer')

        blocked = await controller.submit_answer(CHANNEL, 0)
        self.assertFalse(blocked['success'])
        self.assertFalse((await controller.present_next_question(CHANNEL))['success'])

    @async_test
    async def test_sharing_gives_target_a_point(self):
        controller = self.make_controller()
        await self.start_table(controller)
        await self.reach_offer(controller)

        result = await controller.resolve_shared_bonus(CHANNEL, 2)
        await controller.settle(CHANNEL)

        self.assertTrue(result['success'])
        self.assertIn("Ben", result['user_message'])
        self.assertEqual(self.scores(controller), {"Ana": 3, "Ben": 1})
        status = controller.get_table_status(CHANNEL)
        self.assertFalse(status['offer_pending'])
        self.assertEqual(status['current_player'], "Ben")
        self.assertEqual(self.recorder.names()[-1], 'question_presented')
        streaks = {p['name']: p['streak'] for p in status['players']}
        self.assertEqual(streaks["Ana"], 0)

    @async_test
    async def test_skipping_keeps_scores(self):
        controller = self.make_controller()
        await self.start_table(controller)
        await self.reach_offer(controller)

        result = await controller.resolve_shared_bonus(CHANNEL, None)

        self.assertTrue(result['success'])
        self.assertEqual(self.scores(controller), {"Ana": 3, "Ben": 0})
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_unknown_target_leaves_offer_pending(self):
        controller = self.make_controller()
        await self.start_table(controller)
        await self.reach_offer(controller)

        result = await controller.resolve_shared_bonus(CHANNEL, 99)

        self.assertFalse(result['success'])
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.AWAITING_OFFER)

    @async_test
    async def test_resolve_without_offer(self):
        controller = self.make_controller()
        await self.start_table(controller)

        result = await controller.resolve_shared_bonus(CHANNEL, 2)

        self.assertFalse(result['success'])
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_offer_cancels_showing_card(self):
        config_manager = TestFixtures.create_fast_config_manager()
        config_manager.set_card_timings(5, 5, 5, check_delay=0)
        controller = self.make_controller(config_manager=config_manager)
        table = await self.start_table(controller)
        for correct in (True, False, True, False):
            await self.answer(controller, correct=correct)

        await controller._play_card(table, CardDraw(CardType.BLESSING, 0.09, effect=CardEffect.score_delta(1)))
        self.assertTrue(table.card_showing)
        await self.answer(controller)

        status = controller.get_table_status(CHANNEL)
        self.assertTrue(status['offer_pending'])
        self.assertFalse(status['card_showing'])
        self.assertFalse(status['card_resolving'])
        self.assertEqual(status['pending_effects'], [])
        self.assertEqual(self.scores(controller)["Ana"], 4)


class TestCards(ControllerTestCase):

    def multiple_choice_questions(self):
        return [TestFixtures.create_question(offset * 100 + i, tier, correct_answer=i % 4)
                for offset, tier in enumerate(Tier) for i in range(1, 7)]

    @async_test
    async def test_blessing_adds_point_and_clears(self):
        controller = self.make_controller()
        table = await self.start_table(controller)

        await controller._play_card(table, CardDraw(CardType.BLESSING, 0.09, effect=CardEffect.score_delta(1)))
        self.assertTrue(controller.get_table_status(CHANNEL)['card_showing'])
        self.assertEqual(controller.get_table_status(CHANNEL)['active_card'], 'blessing')

        await controller.settle(CHANNEL)

        self.assertEqual(self.scores(controller)["Ana"], 1)
        self.assertIn('card_drawn', self.recorder.names())
        self.assertIn('card_dismissed', self.recorder.names())
        status = controller.get_table_status(CHANNEL)
        self.assertFalse(status['card_showing'])
        self.assertFalse(status['card_resolving'])
        self.assertIsNone(status['active_card'])

    @async_test
    async def test_trial_never_goes_below_zero(self):
        controller = self.make_controller()
        table = await self.start_table(controller)

        await controller._play_card(table, CardDraw(CardType.TRIAL, 0.05, effect=CardEffect.score_delta(-2)))
        await controller.settle(CHANNEL)

        self.assertEqual(self.scores(controller)["Ana"], 0)

    @async_test
    async def test_reversal_swaps_leader_and_last(self):
        controller = self.make_controller()
        table = await self.start_table(controller)
        table.machine._session.players[1].score = 3

        await controller._play_card(table, CardDraw(CardType.REVERSAL, 0.02, effect=CardEffect.reversal()))
        await controller.settle(CHANNEL)

        self.assertEqual(self.scores(controller), {"Ana": 3, "Ben": 0})

    @async_test
    async def test_card_can_end_the_game(self):
        config_manager = TestFixtures.create_fast_config_manager()
        config_manager.set_card_timings(5, 5, 5, check_delay=0)
        controller = self.make_controller(config_manager=config_manager)
        table = await self.start_table(controller, target_score=5)

        await controller._play_card(table, CardDraw(CardType.MIRACLE, 0.0005, effect=CardEffect.miracle()))
        self.assertEqual(self.scores(controller)["Ana"], 4)
        table.card_showing = False
        table.card_resolving = False
        await controller._play_card(table, CardDraw(CardType.BLESSING, 0.09, effect=CardEffect.score_delta(1)))

        finished = self.recorder.last('game_finished')
        self.assertEqual([w.name for w in finished['winners']], ["Ana", "Ben"])
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.FINISHED)
        self.assertEqual(controller.get_table_status(CHANNEL)['pending_effects'], [])

    @async_test
    async def test_revelation_eliminates_two_wrong_answers(self):
        controller = self.make_controller(self.multiple_choice_questions())
        table = await self.start_table(controller)
        question = self.current_question(controller)
        card = CardDraw(CardType.REVELATION, 0.01, layout=table.layout, correct_answer=question.correct_answer)

        await controller._play_card(table, card)
        await controller.settle(CHANNEL)

        eliminated = self.recorder.last('answers_eliminated')['positions']
        self.assertEqual(len(eliminated), 2)
        self.assertNotIn(self.correct_position(controller), eliminated)
        self.assertEqual(table.eliminated, eliminated)
        self.assertEqual(self.scores(controller), {"Ana": 0, "Ben": 0})

        result = await controller.submit_answer(CHANNEL, eliminated[0])
        self.assertFalse(result['success'])
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_answer_flushes_pending_revelation(self):
        config_manager = TestFixtures.create_fast_config_manager()
        config_manager.set_card_timings(0.05, 5, 5, check_delay=0)
        controller = self.make_controller(self.multiple_choice_questions(), config_manager)
        table = await self.start_table(controller)
        question = self.current_question(controller)
        card = CardDraw(CardType.REVELATION, 0.01, layout=table.layout, correct_answer=question.correct_answer)
        await controller._play_card(table, card)

        names_before = len(self.recorder.names())
        await self.answer(controller)

        names = self.recorder.names()[names_before:]
        self.assertLess(names.index('answers_eliminated'), names.index('question_presented'))
        self.assertEqual(self.scores(controller)["Ana"], 1)
        status = controller.get_table_status(CHANNEL)
        self.assertFalse(status['card_resolving'])
        self.assertEqual(status['eliminated'], [])

    @async_test
    async def test_revelation_skipped_after_question_changes(self):
        controller = self.make_controller(self.multiple_choice_questions())
        table = await self.start_table(controller)
        question = self.current_question(controller)
        card = CardDraw(CardType.REVELATION, 0.01, layout=table.layout, correct_answer=question.correct_answer)

        await self.answer(controller, correct=False)
        table.active_card = card
        await controller._complete_card(table, card)

        self.assertNotIn('answers_eliminated', self.recorder.names())
        self.assertIsNone(table.active_card)
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_random_card_check_uses_table_context(self):
        controller = self.make_controller()
        await self.start_table(controller)
        await controller.settle(CHANNEL)

        context = controller.card_resolver.resolve.call_args[0][0]
        self.assertEqual(context.tier, Tier.EASY)
        self.assertEqual(context.player_count, 2)
        self.assertFalse(context.card_showing)
        self.assertFalse(context.offer_pending)


class TestLifecycle(ControllerTestCase):

    @async_test
    async def test_restart_cancels_pending_effects(self):
        controller = self.make_controller(config_manager=ConfigManager())
        await self.start_table(controller)
        await controller.submit_answer(CHANNEL, self.correct_position(controller))
        self.assertIn('answer_feedback', controller.get_table_status(CHANNEL)['pending_effects'])

        result = await controller.restart_game(CHANNEL)

        self.assertTrue(result['success'])
        self.assertGreaterEqual(result['cancelled_effects'], 1)
        status = controller.get_table_status(CHANNEL)
        self.assertNotIn('answer_feedback', status['pending_effects'])
        self.assertFalse(status['awaiting_feedback'])
        self.assertEqual(status['generation'], 1)
        self.assertEqual(status['current_player'], "Ana")
        self.assertEqual(self.scores(controller), {"Ana": 0, "Ben": 0})
        self.assertEqual(self.recorder.names().count('game_started'), 2)
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_restart_after_finish_keeps_players(self):
        controller = self.make_controller()
        await self.start_table(controller, ("Ana", "easy"), target_score=5)
        for _ in range(5):
            await self.answer(controller)

        await controller.restart_game(CHANNEL)
        await controller.settle(CHANNEL)

        self.assertEqual(controller.get_table_state(CHANNEL), TableState.PLAYING)
        self.assertEqual(self.scores(controller), {"Ana": 0})

    @async_test
    async def test_restart_without_game(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)
        self.assertFalse((await controller.restart_game(CHANNEL))['success'])

    @async_test
    async def test_stop_discards_table(self):
        controller = self.make_controller(config_manager=ConfigManager())
        await self.start_table(controller)

        result = await controller.stop_game(CHANNEL)

        self.assertTrue(result['success'])
        self.assertGreaterEqual(result['cancelled_effects'], 1)
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.INACTIVE)
        self.assertIsNone(controller.get_table_status(CHANNEL))
        self.assertEqual(len(controller.scheduler), 0)
        self.assertFalse((await controller.stop_game(CHANNEL))['success'])

    @async_test
    async def test_stale_feedback_is_ignored_after_stop(self):
        config_manager = TestFixtures.create_fast_config_manager()
        config_manager.set_feedback_delays(0.05, 0.05)
        controller = self.make_controller(config_manager=config_manager)
        await self.start_table(controller)
        await controller.submit_answer(CHANNEL, self.correct_position(controller))

        await controller.stop_game(CHANNEL)
        await asyncio.sleep(0.1)

        self.assertNotIn('game_finished', self.recorder.names())
        self.assertEqual(self.recorder.names().count('question_presented'), 1)

    @async_test
    async def test_exhausted_pool_blocks_until_questions_added(self):
        questions = [TestFixtures.create_question(1, Tier.EASY), TestFixtures.create_question(2, Tier.MEDIUM)]
        controller = self.make_controller(questions)
        await self.start_table(controller)

        await self.answer(controller, correct=False)
        await self.answer(controller, correct=False)

        exhausted = self.recorder.last('pool_exhausted')
        self.assertEqual(exhausted['player'].name, "Ana")
        self.assertEqual(exhausted['tier'], Tier.EASY)
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.BLOCKED)
        self.assertIsNotNone(controller.get_table_status(CHANNEL)['blocked_reason'])

        controller.question_supply.questions.append(TestFixtures.create_question(3, Tier.EASY))
        result = await controller.present_next_question(CHANNEL)

        self.assertTrue(result['success'])
        self.assertEqual(result['question'].id, 3)
        self.assertEqual(controller.get_table_state(CHANNEL), TableState.PLAYING)
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_results(self):
        controller = self.make_controller()
        controller.open_lobby(CHANNEL)
        self.assertIsNone(controller.get_results(CHANNEL))

        await self.start_table(controller, ("Ana", "easy"), ("Ben", "medium"), ("Chloe", "hard"))
        await self.answer(controller, correct=False)
        await self.answer(controller)

        results = controller.get_results(CHANNEL)
        self.assertFalse(results['finished'])
        self.assertEqual(results['standings'][0]['name'], "Ben")
        self.assertEqual([row['rank'] for row in results['standings']], [1, 2, 3])
        await controller.stop_game(CHANNEL)

    @async_test
    async def test_reload_questions(self):
        controller = self.make_controller()
        with tempfile.TemporaryDirectory() as temp_dir:
            TestFixtures.create_temp_question_files(temp_dir)
            controller.question_supply.question_directory = Path(temp_dir)

            result = await controller.reload_questions()

        self.assertTrue(result['success'])
        self.assertEqual(result['summary']['total_questions'], 4)
        self.assertTrue(result['summary']['has_errors'])

    @async_test
    async def test_shutdown_clears_tables(self):
        controller = self.make_controller(config_manager=ConfigManager())
        await self.start_table(controller)

        await controller.shutdown()

        self.assertFalse(controller.has_table(CHANNEL))
        await asyncio.sleep(0)
        self.assertEqual(len(controller.scheduler), 0)


if __name__ == '__main__':
    unittest.main()
