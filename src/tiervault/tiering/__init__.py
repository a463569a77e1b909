"""
Chunk tiering for tiervault.

Provides:
- InventoryCollector: snapshot of chunks and tier usage
- PolicyEvaluator: lifecycle rules -> pending actions
- ActionExecutor: apply actions with bounded concurrency and retries
"""

from tiervault.tiering.executor import CANCELLED, ActionExecutor, default_retry_policy
from tiervault.tiering.inventory import DEFAULT_COLLECTION_RETRY, Inventory, InventoryCollector
from tiervault.tiering.policy import EvaluationResult, PolicyEvaluator

__all__ = [
    "Inventory",
    "InventoryCollector",
    "DEFAULT_COLLECTION_RETRY",
    "EvaluationResult",
    "PolicyEvaluator",
    "ActionExecutor",
    "CANCELLED",
    "default_retry_policy",
]
