"""
Action Executor.

Applies PendingActions to the database engine through a bounded worker
pool. Every action is isolated: its failure is captured in its own
ActionResult and never stops the others.

Behaviour per action:
- The chunk is re-read first, so re-applying an action that already took
  effect (chunk compressed, chunk already on the target tier, chunk already
  dropped) is a successful no-op.
- Expiry re-checks the chunk's age against the retention window right
  before dropping it.
- Transient failures are retried with exponential backoff; permanent
  failures are reported at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Sequence
from datetime import UTC, datetime, timedelta

from tiervault.engine.interface import DatabaseEngine
from tiervault.exceptions import (
    ActionError,
    ChunkNotFoundError,
    ExhaustionError,
    PermanentActionError,
    TransientActionError,
)
from tiervault.models import ActionResult, ChunkRecord, PendingAction
from tiervault.observability import (
    ATTR_ACTION_COUNT,
    ATTR_ACTION_KIND,
    ATTR_ATTEMPT,
    ATTR_CHUNK_ID,
    Tracer,
    create_tracer,
)
from tiervault.retry import BackoffRetryPolicy, RetryConfig, RetryPolicy
from tiervault.types import ActionKind, ActionOutcome, StorageTier

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


def default_retry_policy(max_retries: int = 2, initial_delay: float = 2.0) -> RetryPolicy:
    """Retry transient errors only, with exponential backoff."""
    config = RetryConfig(
        max_retries=max_retries,
        initial_delay=initial_delay,
        max_delay=max(60.0, initial_delay),
        jitter=0.1,
    )
    return BackoffRetryPolicy(config)


class _Skip(Exception):
    """Internal signal: the action no longer applies."""


class ActionExecutor:
    """
    Executes tiering actions with bounded concurrency.

    Example:
        >>> executor = ActionExecutor(engine, max_workers=2)
        >>> results = await executor.execute_all(evaluation.actions)
        >>> failed = [r for r in results if r.failed]
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout: timedelta | None = timedelta(minutes=30),
        max_workers: int = 2,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the executor.

        Args:
            engine: Database engine to apply actions to
            retry_policy: Retry decisions per failure (default: transient
                errors only, 2 retries, 2s initial backoff)
            timeout: Limit for one attempt of one action (None = no limit)
            max_workers: Maximum number of actions in flight
            clock: Source of the current time, for expiry re-checks
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing.
                Ignored if tracer is explicitly provided.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._engine = engine
        self._retry_policy = retry_policy or default_retry_policy()
        self._timeout = timeout
        self._max_workers = max_workers
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def _require_chunk(self, chunk_id: str) -> ChunkRecord:
        chunk = await self._engine.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)
        return chunk

    async def _compress(self, action: PendingAction) -> bool:
        chunk = await self._require_chunk(action.chunk_id)
        if chunk.compressed:
            return True
        await self._engine.compress_chunk(action.chunk_id)
        return False

    async def _migrate(self, action: PendingAction) -> bool:
        target = action.target_tier
        assert target is not None
        chunk = await self._require_chunk(action.chunk_id)
        if chunk.tier is target:
            return True
        if chunk.tier.is_after(target):
            # Tiers never move backward; a deeper chunk already satisfies the action
            logger.debug(
                "Chunk %s already on %s, past target %s",
                action.chunk_id,
                chunk.tier.value,
                target.value,
            )
            return True
        await self._engine.move_chunk(action.chunk_id, target)
        return False

    async def _expire(self, action: PendingAction) -> bool:
        assert action.retain_for is not None
        chunk = await self._engine.get_chunk(action.chunk_id)
        if chunk is None:
            return True
        age = chunk.age(self._clock())
        if age < action.retain_for:
            raise _Skip(f"chunk is {age} old, retention is {action.retain_for}")
        try:
            await self._engine.drop_chunk(action.chunk_id)
        except ChunkNotFoundError:
            return True
        return False

    async def _apply(self, action: PendingAction) -> bool:
        """Apply one attempt. Returns True if the action was already in effect."""
        if action.kind is ActionKind.COMPRESS:
            operation = self._compress(action)
        elif action.kind is ActionKind.MIGRATE:
            operation = self._migrate(action)
        else:
            operation = self._expire(action)

        if self._timeout is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout.total_seconds())
        except TimeoutError as e:
            raise TransientActionError(
                action.chunk_id, f"timed out after {self._timeout.total_seconds():.0f}s"
            ) from e

    async def execute(self, action: PendingAction) -> ActionResult:
        """
        Execute one action, retrying transient failures.

        Never raises for action failures; the outcome is in the result.
        """
        attempt = 0
        with self._tracer.span(
            "tiervault.executor.execute",
            {ATTR_CHUNK_ID: action.chunk_id, ATTR_ACTION_KIND: action.kind.value},
        ) as span:
            while True:
                try:
                    noop = await self._apply(action)
                except _Skip as e:
                    logger.info("Skipped %s: %s", action.describe(), e)
                    return ActionResult(
                        action, ActionOutcome.SKIPPED, error=str(e), attempts=attempt + 1
                    )
                except Exception as e:
                    if self._retry_policy.should_retry(attempt, e):
                        delay = self._retry_policy.get_backoff(attempt)
                        logger.warning(
                            "Retrying %s (attempt %d/%d, delay %.1fs): %s",
                            action.describe(),
                            attempt + 1,
                            self._retry_policy.max_retries + 1,
                            delay,
                            e,
                        )
                        await asyncio.sleep(delay)
                        attempt += 1
                        continue

                    error = e if isinstance(e, ActionError) else PermanentActionError(
                        action.chunk_id, f"{type(e).__name__}: {e}"
                    )
                    logger.error(
                        "Failed %s after %d attempt(s): %s",
                        action.describe(),
                        attempt + 1,
                        error,
                    )
                    if span is not None:
                        span.set_attribute(ATTR_ATTEMPT, attempt + 1)
                    return ActionResult(
                        action, ActionOutcome.FAILED, error=str(error), attempts=attempt + 1
                    )

                if span is not None:
                    span.set_attribute(ATTR_ATTEMPT, attempt + 1)
                if noop:
                    logger.info("%s already applied", action.describe())
                else:
                    logger.info("Applied %s", action.describe())
                return ActionResult(
                    action, ActionOutcome.SUCCEEDED, attempts=attempt + 1, noop=noop
                )

    async def execute_all(
        self,
        actions: Sequence[PendingAction],
        *,
        cancel_event: asyncio.Event | None = None,
        skip_tiers: Collection[StorageTier] = (),
    ) -> list[ActionResult]:
        """
        Execute a batch of actions with at most max_workers in flight.

        Args:
            actions: Actions in emission order
            cancel_event: Once set, no further action is dispatched; actions
                already running complete normally
            skip_tiers: Exhausted tiers; migrations into them are skipped
                while compress and expire actions still run

        Returns:
            One result per action, in the same order as `actions`
        """
        if not actions:
            return []

        semaphore = asyncio.Semaphore(self._max_workers)

        async def run(action: PendingAction) -> ActionResult:
            if action.kind is ActionKind.MIGRATE and action.target_tier in skip_tiers:
                assert action.target_tier is not None
                detail = ExhaustionError(action.target_tier.value, detail="migration skipped")
                logger.warning("Skipped %s: %s", action.describe(), detail)
                return ActionResult(action, ActionOutcome.SKIPPED, error=str(detail), attempts=0)

            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return ActionResult(action, ActionOutcome.SKIPPED, error=CANCELLED, attempts=0)
                return await self.execute(action)

        with self._tracer.span(
            "tiervault.executor.execute_all",
            {ATTR_ACTION_COUNT: len(actions)},
        ):
            results = await asyncio.gather(*(run(action) for action in actions))

        succeeded = sum(1 for r in results if r.outcome is ActionOutcome.SUCCEEDED)
        failed = sum(1 for r in results if r.outcome is ActionOutcome.FAILED)
        skipped = len(results) - succeeded - failed
        logger.info(
            "Executed %d actions: %d succeeded, %d failed, %d skipped",
            len(results),
            succeeded,
            failed,
            skipped,
        )
        return list(results)


__all__ = [
    "CANCELLED",
    "ActionExecutor",
    "default_retry_policy",
]
