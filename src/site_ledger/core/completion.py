"""Work item completion: one fatal transition followed by best-effort side effects.

Completing a work item touches four aggregates (the item, the actor's XP
account, the global inventory and the project stats) and the store commits
one document at a time. Marking the item done is the only step that can
abort the completion; it runs first, so rewards and stock consumption are
always backed by a real completion. Every later step runs independently and
its failure is reported by name in ``CompletionResult.failed_steps`` so the
caller can retry just that piece. Nothing is rolled back.
"""

import logging
import sqlite3
from collections.abc import Callable, Mapping

from site_ledger.config import Config
from site_ledger.core import activity as activity_mod
from site_ledger.core import experience as experience_mod
from site_ledger.core import inventory as inventory_mod
from site_ledger.core import stats as stats_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.db import store
from site_ledger.db.models import CompletionResult, WorkItem

logger = logging.getLogger(__name__)

BASE_REWARD = 50
PRIORITY_BONUS = {"critical": 50, "high": 30, "medium": 10, "low": 0}

STEP_EXPERIENCE = "experience"
STEP_ACTIVITY = "activity"
STEP_INVENTORY = "inventory"
STEP_STATS = "stats"

_RECOVERABLE = (store.LedgerError, sqlite3.Error)


class InvalidArgument(ValueError):
    """Raised when a completion is requested without the identifiers it needs."""


def reward_for_priority(priority: str | None) -> int:
    return BASE_REWARD + PRIORITY_BONUS.get(priority or "medium", 0)


def _snapshot_fields(snapshot: WorkItem | Mapping | None) -> tuple[str, str]:
    if snapshot is None:
        return "Untitled Task", "medium"
    if isinstance(snapshot, WorkItem):
        return snapshot.title, snapshot.priority
    return snapshot.get("title") or "Untitled Task", snapshot.get("priority") or "medium"


class CompletionEngine:
    """Sequences a completion against injected collaborators.

    The defaults are the library functions; tests and alternative stores
    pass their own callables with the same signatures.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        *,
        mark_done: Callable = work_items_mod.mark_done,
        grant_experience: Callable = experience_mod.grant_experience,
        log_activity: Callable = activity_mod.log_activity,
        reconcile_inventory: Callable = inventory_mod.reconcile_inventory_for_work_item,
        increment_stat: Callable = stats_mod.increment_stat,
        max_retries: int = store.DEFAULT_MAX_RETRIES,
        backoff: float = store.DEFAULT_BACKOFF,
    ):
        self.db = db
        self.mark_done = mark_done
        self.grant_experience = grant_experience
        self.log_activity = log_activity
        self.reconcile_inventory = reconcile_inventory
        self.increment_stat = increment_stat
        self.max_retries = max_retries
        self.backoff = backoff

    @classmethod
    def from_config(cls, db: sqlite3.Connection, config: Config, **collaborators) -> "CompletionEngine":
        return cls(
            db,
            max_retries=config.max_retries,
            backoff=config.retry_backoff,
            **collaborators,
        )

    def complete_work_item(
        self,
        work_item_id: str,
        project_id: str,
        actor_id: str | None,
        snapshot: WorkItem | Mapping | None = None,
    ) -> CompletionResult:
        """Mark a work item done and apply its rewards and stock consumption.

        Raises InvalidArgument for missing identifiers, and NotFound,
        AlreadyCompleted or TransactionConflict when the item itself could
        not be transitioned. In all of those cases nothing was written.
        """
        if not work_item_id or not project_id:
            raise InvalidArgument("work_item_id and project_id are required")

        title, priority = _snapshot_fields(snapshot)
        reward = reward_for_priority(priority)
        result = CompletionResult(work_item_id=work_item_id, project_id=project_id)

        logger.info("Completing work item %s for project %s", work_item_id, project_id)
        item = self.mark_done(
            self.db,
            work_item_id,
            actor_id,
            project_id=project_id,
            max_retries=self.max_retries,
            backoff=self.backoff,
        )

        self._grant(result, actor_id, reward, priority)
        self._log_completion(result, actor_id, title, priority, reward)
        self._reconcile(result)
        self._bump_stats(result, item.priority if item else priority)

        if result.failed_steps:
            logger.warning(
                "Work item %s completed with failed steps: %s",
                work_item_id, ", ".join(result.failed_steps),
            )
        else:
            logger.info("Work item %s completed. XP granted: %d", work_item_id, result.xp_awarded)
        return result

    def _grant(self, result: CompletionResult, actor_id: str | None, reward: int, priority: str):
        if not actor_id:
            result.skipped_steps.append(STEP_EXPERIENCE)
            return
        try:
            self.grant_experience(
                self.db,
                actor_id,
                reward,
                f"Completed {priority} priority task",
                max_retries=self.max_retries,
                backoff=self.backoff,
            )
            result.xp_awarded = reward
        except _RECOVERABLE as e:
            logger.error(
                "XP grant of %d to %s for work item %s failed: %s",
                reward, actor_id, result.work_item_id, e,
            )
            result.failed_steps.append(STEP_EXPERIENCE)

    def _log_completion(
        self,
        result: CompletionResult,
        actor_id: str | None,
        title: str,
        priority: str,
        reward: int,
    ):
        try:
            self.log_activity(
                self.db,
                result.project_id,
                "task",
                f"Completed task: {title}",
                {"work_item_id": result.work_item_id, "priority": priority, "xp_earned": reward},
                actor_id,
            )
        except _RECOVERABLE as e:
            logger.error("Activity log for work item %s failed: %s", result.work_item_id, e)
            result.failed_steps.append(STEP_ACTIVITY)

    def _reconcile(self, result: CompletionResult):
        try:
            report = self.reconcile_inventory(
                self.db,
                result.project_id,
                result.work_item_id,
                max_retries=self.max_retries,
                backoff=self.backoff,
            )
        except _RECOVERABLE as e:
            logger.error("Inventory reconciliation for work item %s failed: %s", result.work_item_id, e)
            result.failed_steps.append(STEP_INVENTORY)
            return
        result.settlement = report
        for outcome in report.unsettled:
            result.failed_steps.append(f"{STEP_INVENTORY}:{outcome.request_id}")

    def _bump_stats(self, result: CompletionResult, priority: str):
        try:
            self.increment_stat(self.db, result.project_id, "completed_tasks", 1)
            if priority == "critical":
                self.increment_stat(self.db, result.project_id, "critical_items", -1)
        except _RECOVERABLE as e:
            logger.error(
                "Stats update for project %s after work item %s failed: %s",
                result.project_id, result.work_item_id, e,
            )
            result.failed_steps.append(STEP_STATS)


def complete_work_item(
    db: sqlite3.Connection,
    work_item_id: str,
    project_id: str,
    actor_id: str | None,
    snapshot: WorkItem | Mapping | None = None,
) -> CompletionResult:
    """Complete a work item with the default collaborators."""
    return CompletionEngine(db).complete_work_item(work_item_id, project_id, actor_id, snapshot)
