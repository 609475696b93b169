"""
Scheduled, cancelable game effects.

Card dismissal, card lock release, delayed Revelation eliminations and the
answer feedback delay all run as asyncio tasks registered here. Every task is
keyed by (owner, generation, name): restarting a table bumps its generation
and cancels its tasks, and a callback whose generation no longer matches the
owner's current one is skipped.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

EffectKey = Tuple[Any, int, str]


class EffectLifecycleLogger:
    """Structured logging for scheduled effect lifecycle events."""

    @staticmethod
    def log_effect_scheduled(key: EffectKey, delay: float) -> None:
        owner, generation, name = key
        logger.debug(
            f"Effect lifecycle: SCHEDULED - Owner {owner}, Effect {name}, Delay {delay:.2f}s",
            extra={
                'event_type': 'effect_scheduled',
                'owner': owner,
                'generation': generation,
                'effect': name,
                'delay': delay,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_effect_fired(key: EffectKey, waited: float) -> None:
        owner, generation, name = key
        logger.debug(
            f"Effect lifecycle: FIRED - Owner {owner}, Effect {name}, Waited {waited:.3f}s",
            extra={
                'event_type': 'effect_fired',
                'owner': owner,
                'generation': generation,
                'effect': name,
                'waited': waited,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_effect_cancelled(key: EffectKey, reason: str) -> None:
        owner, generation, name = key
        logger.info(
            f"Effect lifecycle: CANCELLED - Owner {owner}, Effect {name} ({reason})",
            extra={
                'event_type': 'effect_cancelled',
                'owner': owner,
                'generation': generation,
                'effect': name,
                'reason': reason,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_stale_generation(key: EffectKey, current_generation: int) -> None:
        owner, generation, name = key
        logger.warning(
            f"Effect lifecycle: STALE - Owner {owner}, Effect {name}, "
            f"generation {generation} != {current_generation}",
            extra={
                'event_type': 'effect_stale',
                'owner': owner,
                'generation': generation,
                'current_generation': current_generation,
                'effect': name,
                'timestamp': time.time()
            }
        )

    @staticmethod
    def log_effect_error(key: EffectKey, error: Exception) -> None:
        owner, generation, name = key
        logger.error(
            f"Effect lifecycle: ERROR - Owner {owner}, Effect {name}, "
            f"Type {type(error).__name__}: {error}",
            extra={
                'event_type': 'effect_error',
                'owner': owner,
                'generation': generation,
                'effect': name,
                'error_type': type(error).__name__,
                'error_message': str(error),
                'timestamp': time.time()
            },
            exc_info=error
        )


@dataclass
class ScheduledEffect:
    key: EffectKey
    delay: float
    task: Optional[asyncio.Task] = None
    created_at: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.task is not None and not self.task.done()


class EffectScheduler:
    """Registry of delayed effects, one per (owner, generation, name)."""

    def __init__(self, generation_source: Callable[[Any], Optional[int]]):
        """
        Args:
            generation_source: Returns the owner's current generation, or None
                if the owner no longer exists
        """
        self._effects: Dict[EffectKey, ScheduledEffect] = {}
        self._generation_source = generation_source

    def schedule(
        self,
        owner: Any,
        generation: int,
        name: str,
        delay: float,
        callback: Callable[[], Awaitable[None]]
    ) -> ScheduledEffect:
        """
        Run callback after delay unless cancelled or made stale first.

        Scheduling a name that is already pending replaces the old effect.
        """
        key = (owner, generation, name)
        existing = self._effects.get(key)
        if existing is not None and existing.is_pending:
            existing.task.cancel()
            EffectLifecycleLogger.log_effect_cancelled(key, "replaced")

        effect = ScheduledEffect(key, delay, created_at=time.time())
        effect.task = asyncio.create_task(self._run(effect, callback))
        self._effects[key] = effect
        EffectLifecycleLogger.log_effect_scheduled(key, delay)
        return effect

    async def _run(self, effect: ScheduledEffect, callback: Callable[[], Awaitable[None]]) -> None:
        key = effect.key
        try:
            if effect.delay > 0:
                await asyncio.sleep(effect.delay)
            else:
                await asyncio.sleep(0)

            owner, generation, _ = key
            current = self._generation_source(owner)
            if current != generation:
                EffectLifecycleLogger.log_stale_generation(key, current)
                return

            EffectLifecycleLogger.log_effect_fired(key, time.time() - effect.created_at)
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            EffectLifecycleLogger.log_effect_error(key, e)
        finally:
            if self._effects.get(key) is effect:
                del self._effects[key]

    def is_pending(self, owner: Any, generation: int, name: str) -> bool:
        effect = self._effects.get((owner, generation, name))
        return effect is not None and effect.is_pending

    def cancel(self, owner: Any, generation: int, name: str, reason: str = "cancel requested") -> bool:
        """
        Cancel one pending effect.

        Returns:
            True if an effect was cancelled, False if none was pending
        """
        key = (owner, generation, name)
        effect = self._effects.get(key)
        if effect is None or not effect.is_pending or self._is_running(effect):
            return False
        del self._effects[key]
        effect.task.cancel()
        EffectLifecycleLogger.log_effect_cancelled(key, reason)
        return True

    def cancel_owner(self, owner: Any, reason: str = "owner reset") -> int:
        """
        Cancel every pending effect of an owner, whatever its generation.

        An effect calling this from its own callback is left to finish.

        Returns:
            Number of effects cancelled
        """
        keys = [key for key, effect in self._effects.items()
                if key[0] == owner and not self._is_running(effect)]
        cancelled = 0
        for key in keys:
            effect = self._effects.pop(key)
            if effect.is_pending:
                effect.task.cancel()
                EffectLifecycleLogger.log_effect_cancelled(key, reason)
                cancelled += 1
        return cancelled

    @staticmethod
    def _is_running(effect: ScheduledEffect) -> bool:
        try:
            return effect.task is asyncio.current_task()
        except RuntimeError:
            # No running loop
            return False

    def pending_names(self, owner: Any) -> list:
        return sorted(key[2] for key, effect in self._effects.items()
                      if key[0] == owner and effect.is_pending)

    async def join(self, owner: Any) -> None:
        """Wait until the owner has no pending effects, including ones scheduled meanwhile."""
        while True:
            tasks = [effect.task for key, effect in self._effects.items()
                     if key[0] == owner and effect.is_pending and not self._is_running(effect)]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def cancel_all(self, reason: str = "shutdown") -> int:
        owners = {key[0] for key in self._effects}
        return sum(self.cancel_owner(owner, reason) for owner in owners)

    def __len__(self) -> int:
        return len(self._effects)
