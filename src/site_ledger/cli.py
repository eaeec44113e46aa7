"""CLI entry point for the site ledger."""

import json
import sys

import click

from site_ledger.config import configure_logging, get_config
from site_ledger.core import activity as activity_mod
from site_ledger.core import decisions as decisions_mod
from site_ledger.core import experience as experience_mod
from site_ledger.core import inventory as inventory_mod
from site_ledger.core import projects as projects_mod
from site_ledger.core import stats as stats_mod
from site_ledger.core import work_items as work_items_mod
from site_ledger.core.completion import CompletionEngine
from site_ledger.db.engine import get_db
from site_ledger.db.store import LedgerError, NotFound


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """site-ledger - construction site work ledger"""
    configure_logging(get_config())


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
def init_project(project_name):
    """Create a new project."""
    project_id = work_items_mod.slugify(project_name)
    with _get_db() as db:
        project = projects_mod.create_project(db, project_id, project_name)
        click.echo(f"Project created: {project.id} ({project.name})")


# ── Work Item Commands ────────────────────────────────────────────────────────


@main.group("item")
def item_group():
    """Manage work items."""
    pass


@item_group.command("add")
@click.argument("title")
@click.option("--project", required=True, help="Project ID")
@click.option("--description", "-d", default="", help="Description")
@click.option(
    "--priority", "-p", default="medium",
    type=click.Choice(["low", "medium", "high", "critical"]),
)
@click.option("--assignee", default=None, help="Assigned user ID")
def item_add(title, project, description, priority, assignee):
    """Create a new work item."""
    with _get_db() as db:
        item = work_items_mod.create_work_item(
            db, title, project, description, priority=priority, assignee=assignee
        )
        click.echo(f"Created work item: {item.id}")
        click.echo(f"  Title: {item.title}")
        click.echo(f"  Priority: {item.priority}")
        click.echo(f"  Status: {item.status}")


@item_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def item_list(project, status, json_output):
    """List work items."""
    with _get_db() as db:
        items = work_items_mod.list_work_items(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_item_dict(i) for i in items], indent=2))
            return

        if not items:
            click.echo("No work items found.")
            return

        status_icons = {"todo": "○", "active": "●", "review": "◐", "done": "✓"}
        for item in items:
            icon = status_icons.get(item.status, "?")
            flags = " [delayed]" if item.delayed else ""
            click.echo(f"  {icon} {item.priority:<8} {item.id}: {item.title} ({item.status}){flags}")


@item_group.command("show")
@click.argument("item_id")
def item_show(item_id):
    """Show work item details."""
    with _get_db() as db:
        item = work_items_mod.get_work_item(db, item_id)
        if not item:
            click.echo(f"Work item not found: {item_id}", err=True)
            sys.exit(1)

        click.echo(f"Work item: {item.id}")
        click.echo(f"  Title: {item.title}")
        click.echo(f"  Priority: {item.priority}")
        click.echo(f"  Status: {item.status}")
        click.echo(f"  Project: {item.project_id}")
        if item.assignee:
            click.echo(f"  Assignee: {item.assignee}")
        if item.delayed:
            click.echo(f"  Delayed: {item.delay_reason or 'yes'}")
        if item.completed_at:
            click.echo(f"  Completed: {item.completed_at} by {item.completed_by or 'unknown'}")

        requests = inventory_mod.list_material_requests(db, item.project_id, work_item_id=item.id)
        if requests:
            click.echo("  Materials:")
            for r in requests:
                settled = " (deducted)" if r.stock_deducted else ""
                click.echo(f"    #{r.id} {r.quantity} {r.item_name} [{r.status}]{settled}")


@item_group.command("status")
@click.argument("item_id")
@click.argument("status", type=click.Choice(["todo", "active", "review"]))
def item_status(item_id, status):
    """Move a work item between todo, active and review."""
    with _get_db() as db:
        try:
            item = work_items_mod.update_status(db, item_id, status)
        except LedgerError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"{item.id} is now {item.status}")


@item_group.command("done")
@click.argument("item_id")
@click.option("--actor", default=None, help="User completing the item (receives XP)")
def item_done(item_id, actor):
    """Complete a work item: XP, activity log and stock deduction."""
    config = get_config()
    with _get_db() as db:
        item = work_items_mod.get_work_item(db, item_id)
        if not item:
            click.echo(f"Work item not found: {item_id}", err=True)
            sys.exit(1)

        engine = CompletionEngine.from_config(db, config)
        try:
            result = engine.complete_work_item(item.id, item.project_id, actor, item)
        except (LedgerError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        click.echo(f"Completed work item: {item_id}")
        if result.xp_awarded:
            click.echo(f"  XP awarded: {result.xp_awarded} to {actor}")
        if result.settlement:
            for o in result.settlement.deducted:
                click.echo(f"  Deducted {o.quantity:g} of {o.item_name}")
            for o in result.settlement.unsettled:
                click.echo(f"  Not settled #{o.request_id} {o.item_name}: {o.message or o.status}")
        if result.failed_steps:
            click.echo(f"  Needs review: {', '.join(result.failed_steps)}", err=True)


@item_group.command("delay")
@click.argument("item_id")
@click.argument("reason")
@click.option("--actor", default=None)
def item_delay(item_id, reason, actor):
    """Flag a work item as delayed."""
    with _get_db() as db:
        try:
            item = work_items_mod.flag_delay(db, item_id, reason, actor)
        except NotFound as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Flagged {item.id} as delayed: {reason}")


# ── User Commands ─────────────────────────────────────────────────────────────


@main.group("user")
def user_group():
    """Manage experience accounts."""
    pass


@user_group.command("add")
@click.argument("user_id")
@click.option("--name", default="", help="Display name")
@click.option("--role", default="site_super", help="Role")
def user_add(user_id, name, role):
    """Register a user's experience account."""
    with _get_db() as db:
        account = experience_mod.create_account(db, user_id, name, role)
        click.echo(f"Account created: {account.user_id} (level {account.level})")


@user_group.command("show")
@click.argument("user_id")
def user_show(user_id):
    """Show a user's XP and level."""
    with _get_db() as db:
        account = experience_mod.get_account(db, user_id)
        if not account:
            click.echo(f"User not found: {user_id}", err=True)
            sys.exit(1)
        click.echo(f"{account.user_id}: {account.experience} XP, level {account.level}")


@main.command("leaderboard")
@click.option("--limit", default=10, type=int)
def leaderboard(limit):
    """Show the top users by experience."""
    with _get_db() as db:
        accounts = experience_mod.list_leaderboard(db, limit)
        if not accounts:
            click.echo("No accounts yet.")
            return
        for rank, a in enumerate(accounts, 1):
            click.echo(f"  {rank}. {a.display_name or a.user_id} - {a.experience} XP (L{a.level})")


# ── Stock Commands ────────────────────────────────────────────────────────────


@main.group("stock")
def stock_group():
    """Manage the global inventory."""
    pass


@stock_group.command("add")
@click.argument("item_name")
@click.option("--quantity", "-q", default=0.0, type=float)
@click.option("--unit", default="")
@click.option("--min-level", default=0.0, type=float)
def stock_add(item_name, quantity, unit, min_level):
    """Create a stock record for an item."""
    with _get_db() as db:
        item = inventory_mod.add_inventory_item(db, item_name, quantity, unit, min_level)
        click.echo(f"Stock record created: {item.item_name} = {item.quantity:g} {item.unit}")


@stock_group.command("adjust")
@click.argument("item_name")
@click.argument("delta", type=float)
def stock_adjust(item_name, delta):
    """Add (or, with a negative delta, remove) stock."""
    with _get_db() as db:
        try:
            item = inventory_mod.adjust_stock(db, item_name, delta)
        except NotFound as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"{item.item_name} = {item.quantity:g} {item.unit}")


@stock_group.command("list")
@click.option("--low", is_flag=True, help="Only items below their minimum level")
def stock_list(low):
    """List stock levels."""
    with _get_db() as db:
        items = inventory_mod.list_inventory(db, low_only=low)
        if not items:
            click.echo("No stock records.")
            return
        for i in items:
            warn = " LOW" if i.below_minimum else ""
            click.echo(f"  {i.item_name}: {i.quantity:g} {i.unit}{warn}")


# ── Material Request Commands ────────────────────────────────────────────────


@main.group("material")
def material_group():
    """Manage material requests."""
    pass


@material_group.command("request")
@click.argument("item_name")
@click.argument("quantity")
@click.option("--project", required=True, help="Project ID")
@click.option("--item", "work_item_id", default=None, help="Related work item ID")
@click.option("--by", "requested_by", default=None, help="Requesting user")
def material_request(item_name, quantity, project, work_item_id, requested_by):
    """File a material request."""
    with _get_db() as db:
        req = inventory_mod.create_material_request(
            db, project, item_name, quantity,
            related_work_item_id=work_item_id, requested_by=requested_by,
        )
        click.echo(f"Request #{req.id}: {req.quantity} {req.item_name} [{req.status}]")


@material_group.command("approve")
@click.argument("request_id", type=int)
def material_approve(request_id):
    """Approve a material request."""
    _set_request_status(request_id, "approved")


@material_group.command("status")
@click.argument("request_id", type=int)
@click.argument("status", type=click.Choice(["requested", "approved", "rejected", "ordered", "delivered"]))
def material_status(request_id, status):
    """Set a material request's status."""
    _set_request_status(request_id, status)


def _set_request_status(request_id, status):
    with _get_db() as db:
        try:
            req = inventory_mod.set_request_status(db, request_id, status)
        except NotFound as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Request #{req.id} is now {req.status}")


@material_group.command("delete")
@click.argument("request_id", type=int)
def material_delete(request_id):
    """Delete a material request."""
    with _get_db() as db:
        if not inventory_mod.delete_material_request(db, request_id):
            click.echo(f"Request not found: {request_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted request #{request_id}")


@material_group.command("list")
@click.option("--project", required=True, help="Project ID")
@click.option("--status", default=None)
@click.option("--unsettled", is_flag=True, help="Approved requests on done items never deducted")
def material_list(project, status, unsettled):
    """List material requests."""
    with _get_db() as db:
        if unsettled:
            requests = inventory_mod.find_unsettled_consumption(db, project)
        else:
            requests = inventory_mod.list_material_requests(db, project, status=status)
        if not requests:
            click.echo("No material requests.")
            return
        for r in requests:
            link = f" -> {r.related_work_item_id}" if r.related_work_item_id else ""
            settled = " (deducted)" if r.stock_deducted else ""
            click.echo(f"  #{r.id} {r.quantity} {r.item_name} [{r.status}]{settled}{link}")


# ── Stats Commands ────────────────────────────────────────────────────────────


@main.group("stats")
def stats_group():
    """Project statistics."""
    pass


@stats_group.command("show")
@click.argument("project_id")
def stats_show(project_id):
    """Show a project's stats summary."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        s = project.stats
        click.echo(f"Project: {project.id} ({project.name})")
        click.echo(f"  Work items: {s.completed_tasks}/{s.total_tasks} done ({s.progress:.1f}%)")
        click.echo(f"  Critical open: {s.critical_items}")
        click.echo(f"  Pending stock: {s.pending_stock}")
        click.echo(f"  Pending RFIs: {s.pending_decisions}")
        if s.synced_at:
            click.echo(f"  Last synced: {s.synced_at}")
        drift = stats_mod.find_drift(db, project_id)
        for name, (stored, actual) in drift.items():
            click.echo(f"  Drift: {name} stored {stored}, actual {actual}", err=True)


@stats_group.command("recalc")
@click.argument("project_id", required=False)
@click.option("--all", "all_projects", is_flag=True, help="Recalculate every project")
def stats_recalc(project_id, all_projects):
    """Recompute stats from source rows."""
    if not project_id and not all_projects:
        click.echo("Give a project ID or --all.", err=True)
        sys.exit(1)
    with _get_db() as db:
        if all_projects:
            synced = stats_mod.recalc_all_stats(db)
            click.echo(f"Synced {len(synced)} projects.")
            return
        try:
            s = stats_mod.recalc_stats(db, project_id)
        except NotFound as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Synced {project_id}: {s.completed_tasks}/{s.total_tasks} done")


# ── Activity Commands ─────────────────────────────────────────────────────────


@main.command("activity")
@click.argument("project_id")
@click.option("--type", "activity_type", default=None)
@click.option("--limit", default=20, type=int)
def activity_list(project_id, activity_type, limit):
    """Show a project's activity feed."""
    with _get_db() as db:
        records = activity_mod.list_activity(db, project_id, activity_type, limit)
        if not records:
            click.echo("No activity.")
            return
        for r in records:
            mark = "!" if r.is_important else " "
            click.echo(f" {mark}[{r.created_at}] {r.type}: {r.description} ({r.actor_id})")


# ── RFI Commands ──────────────────────────────────────────────────────────────


@main.group("rfi")
def rfi_group():
    """Requests for information."""
    pass


@rfi_group.command("raise")
@click.argument("question")
@click.option("--project", required=True)
@click.option("--item", "work_item_id", default=None)
@click.option("--by", "raised_by", default=None)
def rfi_raise(question, project, work_item_id, raised_by):
    """Raise an RFI."""
    with _get_db() as db:
        d = decisions_mod.raise_decision(db, project, question, raised_by, work_item_id)
        click.echo(f"RFI #{d.id} raised: {d.question}")


@rfi_group.command("answer")
@click.argument("decision_id", type=int)
@click.argument("answer")
def rfi_answer(decision_id, answer):
    """Answer an RFI."""
    with _get_db() as db:
        try:
            d = decisions_mod.answer_decision(db, decision_id, answer)
        except NotFound as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"RFI #{d.id} answered")


@rfi_group.command("list")
@click.option("--project", required=True)
@click.option("--status", default=None)
def rfi_list(project, status):
    """List RFIs."""
    with _get_db() as db:
        items = decisions_mod.list_decisions(db, project, status)
        if not items:
            click.echo("No RFIs.")
            return
        for d in items:
            click.echo(f"  #{d.id} [{d.status}] {d.question}")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the JSON API."""
    from site_ledger.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from site_ledger.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _item_dict(item) -> dict:
    return {
        "id": item.id,
        "title": item.title,
        "status": item.status,
        "priority": item.priority,
        "project": item.project_id,
        "assignee": item.assignee,
        "delayed": item.delayed,
        "completed_by": item.completed_by,
    }


if __name__ == "__main__":
    main()
