"""Data models for the site ledger."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

WORK_ITEM_STATUSES = ("todo", "active", "review", "done")
PRIORITIES = ("low", "medium", "high", "critical")
REQUEST_STATUSES = ("requested", "approved", "rejected", "ordered", "delivered")
PROJECT_STATUSES = ("active", "paused", "completed", "archived")
ACTIVITY_TYPES = ("photo", "task", "stock", "attendance", "project", "incident", "decision")


@dataclass
class ProjectStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    progress: float = 0.0
    pending_stock: int = 0
    critical_items: int = 0
    pending_decisions: int = 0
    synced_at: datetime | None = field(default=None, compare=False)


@dataclass
class Project:
    id: str
    name: str
    status: str = "active"
    stats: ProjectStats = field(default_factory=ProjectStats)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class WorkItem:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "todo"
    priority: str = "medium"
    assignee: str | None = None
    xp_reward: int = 50
    delayed: bool = False
    on_hold: bool = False
    emergency: bool = False
    delay_reason: str | None = None
    completed_by: str | None = None
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class ExperienceAccount:
    user_id: str
    display_name: str = ""
    role: str = "site_super"
    experience: int = 0
    level: int = 1
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class InventoryItem:
    id: int | None = None
    item_name: str = ""
    quantity: float = 0.0
    unit: str = ""
    min_level: float = 0.0
    updated_at: datetime | None = None

    @property
    def below_minimum(self) -> bool:
        return self.quantity < self.min_level


@dataclass
class MaterialRequest:
    id: int | None = None
    project_id: str = ""
    item_name: str = ""
    quantity: str = ""
    unit: str = ""
    status: str = "requested"
    related_work_item_id: str | None = None
    requested_by: str | None = None
    stock_deducted: bool = False
    deducted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ActivityRecord:
    id: int | None = None
    project_id: str = ""
    type: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    actor_id: str = "system"
    is_important: bool = False
    created_at: datetime | None = None


@dataclass
class Decision:
    id: int | None = None
    project_id: str = ""
    question: str = ""
    status: str = "pending"
    raised_by: str | None = None
    work_item_id: str | None = None
    answer: str | None = None
    created_at: datetime | None = None
    answered_at: datetime | None = None


# ── Results ─────────────────────────────────────────────────────────────────


@dataclass
class SettlementOutcome:
    request_id: int
    item_name: str
    status: str  # deducted | already_settled | no_stock_record | invalid_quantity | failed
    quantity: float = 0.0
    message: str = ""

    @property
    def settled(self) -> bool:
        return self.status in ("deducted", "already_settled")


@dataclass
class SettlementReport:
    project_id: str
    work_item_id: str
    outcomes: list[SettlementOutcome] = field(default_factory=list)

    @property
    def deducted(self) -> list[SettlementOutcome]:
        return [o for o in self.outcomes if o.status == "deducted"]

    @property
    def unsettled(self) -> list[SettlementOutcome]:
        return [o for o in self.outcomes if not o.settled]

    @property
    def warnings(self) -> list[SettlementOutcome]:
        return [o for o in self.outcomes if o.status in ("no_stock_record", "invalid_quantity")]


@dataclass
class CompletionResult:
    work_item_id: str
    project_id: str
    success: bool = True
    failed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    xp_awarded: int = 0
    settlement: SettlementReport | None = None

    @property
    def fully_succeeded(self) -> bool:
        return self.success and not self.failed_steps
