"""
Configuration manager for table setup validation and game timings.
"""
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import GameSettings, Player, Tier
from .question_supply import parse_tier


class ConfigManager:
    """Validates setup parameters and manages game settings."""

    # Default configuration values
    DEFAULT_TARGET_SCORE = 10
    DEFAULT_QUESTION_DIRECTORY = "./questions/"

    # Validation limits
    MIN_PLAYERS = 1
    MAX_PLAYERS = 8
    MIN_TARGET_SCORE = 5
    MAX_TARGET_SCORE = 50
    MAX_NAME_LENGTH = 15
    MAX_DELAY = 30.0

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = GameSettings(default_target_score=self.DEFAULT_TARGET_SCORE)
        self._question_directory = self.DEFAULT_QUESTION_DIRECTORY

    def get_game_settings(self) -> GameSettings:
        """
        Get current game settings.

        Returns:
            A copy of the current GameSettings
        """
        return replace(self._settings)

    # Setup validation

    def validate_player_count(self, count: Any) -> Dict[str, Any]:
        if not isinstance(count, int) or isinstance(count, bool):
            return self._failure(
                f"Player count must be an integer, got {type(count).__name__}",
                f"❌ Invalid input: Expected a number, got {type(count).__name__}"
            )
        if not self.MIN_PLAYERS <= count <= self.MAX_PLAYERS:
            return self._failure(
                f"Player count must be between {self.MIN_PLAYERS} and {self.MAX_PLAYERS}, got {count}",
                f"❌ A game needs {self.MIN_PLAYERS} to {self.MAX_PLAYERS} players"
            )
        return {'success': True, 'value': count}

    def validate_target_score(self, score: Any) -> Dict[str, Any]:
        if not isinstance(score, int) or isinstance(score, bool):
            return self._failure(
                f"Target score must be an integer, got {type(score).__name__}",
                f"❌ Invalid input: Expected a number, got {type(score).__name__}"
            )
        if not self.MIN_TARGET_SCORE <= score <= self.MAX_TARGET_SCORE:
            return self._failure(
                f"Target score must be between {self.MIN_TARGET_SCORE} and {self.MAX_TARGET_SCORE}, got {score}",
                f"❌ Target score must be between {self.MIN_TARGET_SCORE} and {self.MAX_TARGET_SCORE} points"
            )
        return {'success': True, 'value': score}

    def validate_player_name(self, name: Any) -> Dict[str, Any]:
        if not isinstance(name, str):
            return self._failure(
                f"Player name must be a string, got {type(name).__name__}",
                "❌ Invalid player name"
            )
        cleaned = name.strip()
        if not cleaned:
            return self._failure("Player name cannot be empty", "❌ Every player needs a name")
        if len(cleaned) > self.MAX_NAME_LENGTH:
            return self._failure(
                f"Player name '{cleaned}' exceeds {self.MAX_NAME_LENGTH} characters",
                f"❌ Names are limited to {self.MAX_NAME_LENGTH} characters"
            )
        return {'success': True, 'value': cleaned}

    def validate_tier(self, tier: Any) -> Dict[str, Any]:
        if isinstance(tier, Tier):
            return {'success': True, 'value': tier}
        parsed = parse_tier(tier)
        if parsed is None:
            return self._failure(
                f"Unknown tier: {tier!r}",
                "❌ Tier must be easy, medium or hard"
            )
        return {'success': True, 'value': parsed}

    def validate_setup(self, target_score: Any, entries: Sequence[Tuple[Any, Any]]) -> Dict[str, Any]:
        """
        Validate a whole table setup before StartGame.

        Args:
            target_score: Points needed to win
            entries: (name, tier) pairs in turn order

        Returns:
            Dictionary with success status, every error found, and on success
            the Player list with stable ids in turn order
        """
        errors: List[str] = []
        user_messages: List[str] = []

        def collect(result: Dict[str, Any]) -> Optional[Any]:
            if result['success']:
                return result['value']
            errors.append(result['error'])
            user_messages.append(result['user_message'])
            return None

        collect(self.validate_target_score(target_score))
        collect(self.validate_player_count(len(entries)))

        players: List[Player] = []
        for seat, (name, tier) in enumerate(entries, start=1):
            valid_name = collect(self.validate_player_name(name))
            valid_tier = collect(self.validate_tier(tier))
            if valid_name is not None and valid_tier is not None:
                players.append(Player(id=seat, name=valid_name, tier=valid_tier))

        if errors:
            for error in errors:
                self.logger.error(f"Setup rejected: {error}")
            return {
                'success': False,
                'errors': errors,
                'error': "; ".join(errors),
                'user_message': "\n".join(user_messages)
            }

        return {
            'success': True,
            'players': players,
            'target_score': target_score,
            'message': f"Setup valid: {len(players)} players, target {target_score}",
            'user_message': f"✅ {len(players)} players ready, first to {target_score} points"
        }

    # Settings

    def set_default_target_score(self, score: Any) -> Dict[str, Any]:
        result = self.validate_target_score(score)
        if not result['success']:
            self.logger.error(result['error'])
            return result
        self._settings.default_target_score = score
        self.logger.info(f"Default target score set to {score}")
        return {
            'success': True,
            'message': f"Default target score set to {score}",
            'user_message': f"✅ New tables play to {score} points"
        }

    def _validate_delay(self, label: str, seconds: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(seconds, (int, float)) or isinstance(seconds, bool):
            return self._failure(
                f"{label} must be a number, got {type(seconds).__name__}",
                f"❌ Invalid input: Expected a number of seconds for {label.lower()}"
            )
        if not 0 <= seconds <= self.MAX_DELAY:
            return self._failure(
                f"{label} must be between 0 and {self.MAX_DELAY} seconds, got {seconds}",
                f"❌ {label} must be between 0 and {self.MAX_DELAY:g} seconds"
            )
        return None

    def set_card_timings(
        self,
        display: Any,
        revelation_delay: Any,
        lock: Any,
        check_delay: Any = None
    ) -> Dict[str, Any]:
        """
        Set how long cards stay on screen and when their effects resolve.

        Args:
            display: Seconds a card stays visible
            revelation_delay: Seconds before a Revelation eliminates answers
            lock: Seconds before another card may be drawn after an immediate card
            check_delay: Seconds between presenting a question and the card check;
                unchanged if None

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if check_delay is None:
            check_delay = self._settings.card_check_delay

        for label, value in (("Card display duration", display),
                             ("Revelation delay", revelation_delay),
                             ("Card lock duration", lock),
                             ("Card check delay", check_delay)):
            failure = self._validate_delay(label, value)
            if failure:
                self.logger.error(failure['error'])
                return failure

        if display > lock:
            failure = self._failure(
                "Card display duration cannot exceed the card lock duration",
                "❌ Cards must stay locked at least as long as they are shown"
            )
            self.logger.error(failure['error'])
            return failure

        self._settings.card_display_duration = float(display)
        self._settings.revelation_delay = float(revelation_delay)
        self._settings.card_lock_duration = float(lock)
        self._settings.card_check_delay = float(check_delay)
        self.logger.info(f"Card timings set: display={display}s revelation={revelation_delay}s lock={lock}s")
        return {
            'success': True,
            'message': "Card timings updated",
            'user_message': f"✅ Cards show for {display}s"
        }

    def set_feedback_delays(self, correct: Any, wrong: Any) -> Dict[str, Any]:
        for label, value in (("Correct answer delay", correct), ("Wrong answer delay", wrong)):
            failure = self._validate_delay(label, value)
            if failure:
                self.logger.error(failure['error'])
                return failure

        self._settings.correct_feedback_delay = float(correct)
        self._settings.wrong_feedback_delay = float(wrong)
        self.logger.info(f"Feedback delays set: correct={correct}s wrong={wrong}s")
        return {
            'success': True,
            'message': "Feedback delays updated",
            'user_message': f"✅ Next turn starts {correct}s after a right answer, {wrong}s after a wrong one"
        }

    def set_question_directory(self, directory: Any) -> Dict[str, Any]:
        """
        Set the directory path for question files.

        Args:
            directory: Path to question files directory

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        if not isinstance(directory, str) or not directory.strip():
            failure = self._failure(
                "Question directory must be a non-empty path string",
                "❌ Directory path cannot be empty"
            )
            self.logger.error(failure['error'])
            return failure

        try:
            normalized_path = str(Path(directory).resolve())
        except (OSError, ValueError) as e:
            failure = self._failure(
                f"Invalid directory path format: {e}",
                f"❌ Invalid path format: {directory}"
            )
            self.logger.error(failure['error'])
            return failure

        self._question_directory = normalized_path
        self.logger.info(f"Question directory set to {normalized_path}")
        return {
            'success': True,
            'message': f"Question directory set to {normalized_path}",
            'user_message': f"✅ Question directory set to {normalized_path}"
        }

    def get_question_directory(self) -> str:
        return self._question_directory

    def apply_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Apply the 'game' section of config.json.

        Invalid entries are logged and skipped, leaving defaults in place.

        Returns:
            Error messages for the entries that were rejected
        """
        game_config = config.get('game', {})
        timings = game_config.get('timings', {})
        results = []

        if 'question_directory' in game_config:
            results.append(self.set_question_directory(game_config['question_directory']))
        if 'default_target_score' in game_config:
            results.append(self.set_default_target_score(game_config['default_target_score']))
        if timings:
            results.append(self.set_card_timings(
                timings.get('card_display', self._settings.card_display_duration),
                timings.get('revelation_delay', self._settings.revelation_delay),
                timings.get('card_lock', self._settings.card_lock_duration),
                timings.get('card_check', self._settings.card_check_delay),
            ))
            results.append(self.set_feedback_delays(
                timings.get('correct_feedback', self._settings.correct_feedback_delay),
                timings.get('wrong_feedback', self._settings.wrong_feedback_delay),
            ))

        return [r['error'] for r in results if not r['success']]

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings = GameSettings(default_target_score=self.DEFAULT_TARGET_SCORE)
        self._question_directory = self.DEFAULT_QUESTION_DIRECTORY
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }

        if not self.validate_target_score(self._settings.default_target_score)['success']:
            validation_result["valid"] = False
            validation_result["issues"].append(
                f"Invalid default target score: {self._settings.default_target_score}"
            )

        if self._settings.card_display_duration > self._settings.card_lock_duration:
            validation_result["valid"] = False
            validation_result["issues"].append("Card display duration exceeds card lock duration")

        if not isinstance(self._question_directory, str) or not self._question_directory.strip():
            validation_result["valid"] = False
            validation_result["issues"].append(
                f"Invalid question directory: {self._question_directory}"
            )

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        s = self._settings
        return (
            f"Game Settings:\n"
            f"• Default target: {s.default_target_score} points\n"
            f"• Card display: {s.card_display_duration:g}s (lock {s.card_lock_duration:g}s)\n"
            f"• Revelation delay: {s.revelation_delay:g}s\n"
            f"• Feedback: {s.correct_feedback_delay:g}s right / {s.wrong_feedback_delay:g}s wrong\n"
            f"• Question Directory: {self._question_directory}"
        )

    def _failure(self, error: str, user_message: str) -> Dict[str, Any]:
        return {
            'success': False,
            'error': error,
            'user_message': user_message
        }
