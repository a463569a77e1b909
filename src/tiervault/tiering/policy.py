"""
Policy Evaluator.

Turns an inventory snapshot plus the configured lifecycle rules into the
list of tiering actions to perform. Evaluation is pure: no I/O, no clock
reads (``now`` is passed in), and the same inputs always give the same
output.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from tiervault.models import ChunkRecord, PendingAction, PolicyRule
from tiervault.types import ActionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvaluationResult:
    """
    Output of one evaluation.

    Attributes:
        actions: At most one action per chunk, in input chunk order
        unmanaged: Chunks that matched no rule
    """

    actions: tuple[PendingAction, ...] = ()
    unmanaged: tuple[ChunkRecord, ...] = field(default_factory=tuple)

    def count(self, kind: ActionKind) -> int:
        return sum(1 for action in self.actions if action.kind is kind)


class PolicyEvaluator:
    """
    Evaluates lifecycle rules against chunks.

    Rule matching: rules are tried in declaration order and the first rule
    whose table_pattern matches the chunk's table wins. Later rules are
    never consulted for that chunk, so put specific patterns before broad
    ones.

    Per chunk, at most one action is produced, chosen by precedence:

    1. expire, if age >= retain_for. An expiring chunk is never compressed
       or migrated first.
    2. compress, if the rule compresses, age >= compress_after and the
       chunk is not compressed yet.
    3. migrate, to the deepest stage reached by the chunk's age, if that
       tier is deeper than the chunk's current tier.

    When a chunk is due for both compression and migration it is
    compressed now and migrated by a later run.

    Example:
        >>> evaluator = PolicyEvaluator([hot_data_rule, history_rule])
        >>> result = evaluator.evaluate(inventory.chunks, now=datetime.now(UTC))
        >>> for action in result.actions:
        ...     print(action.describe())
    """

    def __init__(self, rules: Iterable[PolicyRule]) -> None:
        self._rules: tuple[PolicyRule, ...] = tuple(rules)

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        return self._rules

    def match_rule(self, table_name: str) -> PolicyRule | None:
        """First rule, in declaration order, whose pattern matches the table."""
        for rule in self._rules:
            if rule.matches(table_name):
                return rule
        return None

    def action_for(
        self,
        chunk: ChunkRecord,
        rule: PolicyRule,
        now: datetime,
    ) -> PendingAction | None:
        """Decide the single action (if any) a rule requires for one chunk."""
        age = chunk.age(now)

        if rule.retain_for is not None and age >= rule.retain_for:
            return PendingAction(
                chunk_id=chunk.chunk_id,
                table_name=chunk.table_name,
                kind=ActionKind.EXPIRE,
                rule_name=rule.name,
                retain_for=rule.retain_for,
                created_at=now,
            )

        if (
            rule.compress_after is not None
            and age >= rule.compress_after
            and not chunk.compressed
        ):
            return PendingAction(
                chunk_id=chunk.chunk_id,
                table_name=chunk.table_name,
                kind=ActionKind.COMPRESS,
                rule_name=rule.name,
                created_at=now,
            )

        target = rule.target_tier(age)
        if target is not None and target.is_after(chunk.tier):
            return PendingAction(
                chunk_id=chunk.chunk_id,
                table_name=chunk.table_name,
                kind=ActionKind.MIGRATE,
                rule_name=rule.name,
                target_tier=target,
                created_at=now,
            )

        return None

    def evaluate(self, chunks: Sequence[ChunkRecord], now: datetime) -> EvaluationResult:
        """
        Evaluate every chunk.

        Args:
            chunks: Chunk records from an inventory snapshot
            now: Reference time for chunk ages

        Returns:
            EvaluationResult with the actions and the unmanaged chunks
        """
        actions: list[PendingAction] = []
        unmanaged: list[ChunkRecord] = []

        for chunk in chunks:
            rule = self.match_rule(chunk.table_name)
            if rule is None:
                unmanaged.append(chunk)
                continue
            action = self.action_for(chunk, rule, now)
            if action is not None:
                actions.append(action)

        if unmanaged:
            tables = sorted({chunk.table_name for chunk in unmanaged})
            logger.info(
                "%d unmanaged chunk(s) in tables with no matching rule: %s",
                len(unmanaged),
                ", ".join(tables),
            )

        result = EvaluationResult(actions=tuple(actions), unmanaged=tuple(unmanaged))
        logger.debug(
            "Evaluated %d chunks: %d compress, %d migrate, %d expire",
            len(chunks),
            result.count(ActionKind.COMPRESS),
            result.count(ActionKind.MIGRATE),
            result.count(ActionKind.EXPIRE),
        )
        return result


__all__ = [
    "EvaluationResult",
    "PolicyEvaluator",
]
