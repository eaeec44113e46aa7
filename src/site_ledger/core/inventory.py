"""Global inventory and the material requests that consume it.

Settlement of a request touches two documents (the inventory row and the
request) that cannot be written atomically together. The order is fixed:
decrement stock first, then flag the request as settled. A crash between
the two leaves stock consumed but the request unflagged, which an audit of
``stock_deducted = 0`` approved requests on done work items will surface.
The reverse order could silently lose consumption and is never used.
"""

import logging
import re
import sqlite3
import time
from datetime import datetime

from site_ledger.core import activity as activity_mod
from site_ledger.core import stats as stats_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.db import store
from site_ledger.db.models import (
    REQUEST_STATUSES,
    InventoryItem,
    MaterialRequest,
    SettlementOutcome,
    SettlementReport,
)

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


class AlreadySettled(store.LedgerError):
    """Raised when the settled flag was set by someone else first."""


def parse_quantity(value) -> float:
    """Leading number of a free-text quantity (``"20 bags"`` -> 20.0), else 0."""
    if isinstance(value, (int, float)):
        return float(value)
    match = _LEADING_NUMBER.match(str(value or ""))
    return float(match.group(1)) if match else 0.0


# ── Inventory ───────────────────────────────────────────────────────────────


def add_inventory_item(
    db: sqlite3.Connection,
    item_name: str,
    quantity: float = 0,
    unit: str = "",
    min_level: float = 0,
) -> InventoryItem:
    """Create the stock row for an item name."""
    if not item_name.strip():
        raise ValueError("item_name is required")
    db.execute(
        "INSERT INTO inventory (item_name, quantity, unit, min_level) VALUES (?, ?, ?, ?)",
        (item_name, quantity, unit, min_level),
    )
    db.commit()
    return get_inventory_item(db, item_name)


def get_inventory_item(db: sqlite3.Connection, item_name: str) -> InventoryItem | None:
    """Exact-name lookup."""
    row = db.execute(
        "SELECT * FROM inventory WHERE item_name = ?", (item_name,)
    ).fetchone()
    if not row:
        return None
    return _row_to_item(row)


def list_inventory(db: sqlite3.Connection, low_only: bool = False) -> list[InventoryItem]:
    rows = db.execute("SELECT * FROM inventory ORDER BY item_name").fetchall()
    items = [_row_to_item(r) for r in rows]
    if low_only:
        items = [i for i in items if i.below_minimum]
    return items


def adjust_stock(db: sqlite3.Connection, item_name: str, delta: float) -> InventoryItem:
    """Atomically add ``delta`` (negative to consume) to an item's quantity.

    The row is never overwritten with an absolute value, so concurrent
    adjustments cannot lose each other's updates.
    """
    item = get_inventory_item(db, item_name)
    if item is None:
        raise store.NotFound(f"No stock record for item {item_name!r}")
    store.increment(
        db, "inventory", item.id, {"quantity": delta}, extra_sql="updated_at = datetime('now')"
    )
    return get_inventory_item(db, item_name)


# ── Material Requests ──────────────────────────────────────────────────────


def create_material_request(
    db: sqlite3.Connection,
    project_id: str,
    item_name: str,
    quantity: str,
    unit: str = "",
    related_work_item_id: str | None = None,
    requested_by: str | None = None,
    status: str = "requested",
) -> MaterialRequest:
    """File a material request, optionally linked to a work item."""
    if status not in REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    request_id = store.append(
        db,
        "material_requests",
        {
            "project_id": project_id,
            "item_name": item_name,
            "quantity": str(quantity),
            "unit": unit,
            "status": status,
            "related_work_item_id": related_work_item_id,
            "requested_by": requested_by,
        },
    )
    if status in ("approved", "ordered"):
        stats_mod.increment_stat(db, project_id, "pending_stock", 1)
    return get_material_request(db, request_id)


def get_material_request(db: sqlite3.Connection, request_id: int) -> MaterialRequest | None:
    row = db.execute(
        "SELECT * FROM material_requests WHERE id = ?", (request_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_request(row)


def list_material_requests(
    db: sqlite3.Connection,
    project_id: str,
    status: str | None = None,
    work_item_id: str | None = None,
) -> list[MaterialRequest]:
    query = "SELECT * FROM material_requests WHERE project_id = ?"
    params: list = [project_id]
    if status:
        query += " AND status = ?"
        params.append(status)
    if work_item_id is not None:
        query += " AND related_work_item_id = ?"
        params.append(work_item_id)
    query += " ORDER BY id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_request(r) for r in rows]


def set_request_status(
    db: sqlite3.Connection,
    request_id: int,
    status: str,
) -> MaterialRequest:
    """Change a request's approval status, then resync the project stats."""
    if status not in REQUEST_STATUSES:
        raise ValueError(f"Invalid request status: {status}")
    request = get_material_request(db, request_id)
    if request is None:
        raise store.NotFound(f"material_requests/{request_id} does not exist")
    db.execute(
        "UPDATE material_requests SET status = ?, updated_at = datetime('now') WHERE id = ?",
        (status, request_id),
    )
    db.commit()
    stats_mod.recalc_stats(db, request.project_id)
    return get_material_request(db, request_id)


def delete_material_request(db: sqlite3.Connection, request_id: int) -> bool:
    """Delete a request and resync the project stats."""
    request = get_material_request(db, request_id)
    if request is None:
        return False
    db.execute("DELETE FROM material_requests WHERE id = ?", (request_id,))
    db.commit()
    stats_mod.recalc_stats(db, request.project_id)
    return True


def find_unsettled_consumption(db: sqlite3.Connection, project_id: str) -> list[MaterialRequest]:
    """Approved requests on done work items whose stock was never flagged as deducted."""
    rows = db.execute(
        """SELECT r.* FROM material_requests r
           JOIN work_items w ON w.id = r.related_work_item_id
           WHERE r.project_id = ? AND r.status = 'approved'
             AND r.stock_deducted = 0 AND w.status = 'done'
           ORDER BY r.id""",
        (project_id,),
    ).fetchall()
    return [_row_to_request(r) for r in rows]


# ── Settlement ─────────────────────────────────────────────────────────────


def _mark_settled(
    db: sqlite3.Connection,
    request_id: int,
    max_retries: int,
    backoff: float,
) -> None:
    """Flip ``stock_deducted`` only if it is still unset, retrying store errors."""
    for attempt in range(1, max_retries + 1):
        try:
            cur = db.execute(
                """UPDATE material_requests
                   SET stock_deducted = 1, deducted_at = ?, updated_at = datetime('now')
                   WHERE id = ? AND stock_deducted = 0""",
                (datetime.now().isoformat(), request_id),
            )
            db.commit()
        except sqlite3.OperationalError:
            db.rollback()
            if attempt == max_retries:
                raise
            logger.warning("Retrying settled flag for request %s (attempt %d)", request_id, attempt)
            time.sleep(backoff * attempt)
            continue
        if cur.rowcount == 0:
            raise AlreadySettled(f"material_requests/{request_id} was already settled")
        return


def reconcile_inventory_for_work_item(
    db: sqlite3.Connection,
    project_id: str,
    work_item_id: str,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
    backoff: float = store.DEFAULT_BACKOFF,
) -> SettlementReport:
    """Deduct stock once for every approved request linked to a work item.

    Each request is settled independently; a failure on one is recorded in
    the report and does not stop the others.
    """
    if not project_id or not work_item_id:
        raise ValueError("project_id and work_item_id are required")
    report = SettlementReport(project_id=project_id, work_item_id=work_item_id)
    requests = list_material_requests(db, project_id, status="approved", work_item_id=work_item_id)

    for request in requests:
        if request.stock_deducted:
            logger.info("Stock already deducted for request %s", request.id)
            report.outcomes.append(
                SettlementOutcome(request.id, request.item_name, "already_settled")
            )
            continue

        try:
            outcome = _settle_request(db, project_id, work_item_id, request, max_retries, backoff)
        except (store.LedgerError, sqlite3.Error) as e:
            logger.error(
                "Settlement failed for request %s (%s) on work item %s: %s",
                request.id, request.item_name, work_item_id, e,
            )
            outcome = SettlementOutcome(request.id, request.item_name, "failed", message=str(e))
        report.outcomes.append(outcome)

    return report


def reconcile_for_completed_item(
    db: sqlite3.Connection,
    project_id: str,
    work_item_id: str,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
    backoff: float = store.DEFAULT_BACKOFF,
) -> SettlementReport:
    """Re-run settlement for a work item that is already done in this project."""
    item = work_items_mod.get_work_item(db, work_item_id)
    if item is None or item.project_id != project_id:
        raise store.NotFound(f"work_items/{work_item_id} does not exist in project {project_id}")
    if item.status != "done":
        raise ValueError(f"Work item {work_item_id} is {item.status}, not done")
    return reconcile_inventory_for_work_item(db, project_id, work_item_id, max_retries, backoff)


def _settle_request(
    db: sqlite3.Connection,
    project_id: str,
    work_item_id: str,
    request: MaterialRequest,
    max_retries: int,
    backoff: float,
) -> SettlementOutcome:
    item = get_inventory_item(db, request.item_name)
    if item is None:
        logger.warning("No stock record for item %r (request %s)", request.item_name, request.id)
        return SettlementOutcome(
            request.id,
            request.item_name,
            "no_stock_record",
            message=f"no stock record for item {request.item_name}",
        )

    quantity = parse_quantity(request.quantity)
    if quantity <= 0:
        logger.warning("Request %s has no positive quantity: %r", request.id, request.quantity)
        return SettlementOutcome(
            request.id,
            request.item_name,
            "invalid_quantity",
            message=f"quantity {request.quantity!r} is not a positive number",
        )

    store.increment(
        db, "inventory", item.id, {"quantity": -quantity}, extra_sql="updated_at = datetime('now')"
    )
    try:
        _mark_settled(db, request.id, max_retries, backoff)
    except (store.LedgerError, sqlite3.Error):
        logger.error(
            "Stock for request %s decremented by %s but not flagged as settled; audit required",
            request.id, quantity,
        )
        raise

    try:
        activity_mod.log_activity(
            db,
            project_id,
            "stock",
            f"Auto-deducted {quantity:g} {item.unit or 'units'} of {request.item_name}",
            {
                "type": "consumption",
                "work_item_id": work_item_id,
                "request_id": request.id,
                "stock_item": request.item_name,
                "quantity": quantity,
            },
            activity_mod.SYSTEM_ACTOR,
        )
    except (store.LedgerError, sqlite3.Error) as e:
        logger.warning("Could not log deduction for request %s: %s", request.id, e)

    logger.info("Deducted %g of %s for request %s", quantity, request.item_name, request.id)
    return SettlementOutcome(request.id, request.item_name, "deducted", quantity=quantity)


def _row_to_item(row) -> InventoryItem:
    return InventoryItem(
        id=row["id"],
        item_name=row["item_name"],
        quantity=float(row["quantity"] or 0),
        unit=row["unit"] or "",
        min_level=float(row["min_level"] or 0),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_request(row) -> MaterialRequest:
    return MaterialRequest(
        id=row["id"],
        project_id=row["project_id"],
        item_name=row["item_name"],
        quantity=row["quantity"],
        unit=row["unit"] or "",
        status=row["status"],
        related_work_item_id=row["related_work_item_id"],
        requested_by=row["requested_by"],
        stock_deducted=bool(row["stock_deducted"]),
        deducted_at=_parse_dt(row["deducted_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
