"""Experience (XP) ledger and derived levels."""

import logging
import sqlite3
from datetime import datetime

from site_ledger.db import store
from site_ledger.db.models import ExperienceAccount

logger = logging.getLogger(__name__)

LEVEL_SIZE = 1000


def level_for(experience: int) -> int:
    return experience // LEVEL_SIZE + 1


def create_account(
    db: sqlite3.Connection,
    user_id: str,
    display_name: str = "",
    role: str = "site_super",
    experience: int = 0,
) -> ExperienceAccount:
    """Register a user's experience account."""
    if not user_id:
        raise ValueError("user_id is required")
    experience = max(0, experience)
    db.execute(
        """INSERT INTO experience_accounts (user_id, display_name, role, experience, level)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, display_name, role, experience, level_for(experience)),
    )
    db.commit()
    return get_account(db, user_id)


def get_account(db: sqlite3.Connection, user_id: str) -> ExperienceAccount | None:
    row = db.execute(
        "SELECT * FROM experience_accounts WHERE user_id = ?", (user_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_account(row)


def grant_experience(
    db: sqlite3.Connection,
    user_id: str,
    amount: int,
    reason: str,
    max_retries: int = store.DEFAULT_MAX_RETRIES,
    backoff: float = store.DEFAULT_BACKOFF,
) -> ExperienceAccount:
    """Add ``amount`` XP to a user and recompute their level in one transaction.

    Raises NotFound if the account does not exist. Calling this twice grants
    twice; callers own de-duplication.
    """

    def _apply(account: dict) -> dict:
        new_experience = (account["experience"] or 0) + amount
        return {"experience": new_experience, "level": level_for(new_experience)}

    doc = store.run_transaction(
        db, "experience_accounts", user_id, _apply, max_retries=max_retries, backoff=backoff
    )
    logger.info("Granted %d XP to %s for %s (now %d, level %d)",
                amount, user_id, reason, doc["experience"], doc["level"])
    return _row_to_account(doc)


def list_leaderboard(db: sqlite3.Connection, limit: int = 10) -> list[ExperienceAccount]:
    """Accounts ordered by experience, highest first."""
    rows = db.execute(
        "SELECT * FROM experience_accounts ORDER BY experience DESC, user_id LIMIT ?",
        (limit,),
    ).fetchall()
    return [_row_to_account(r) for r in rows]


def _row_to_account(row) -> ExperienceAccount:
    return ExperienceAccount(
        user_id=row["user_id"],
        display_name=row["display_name"] or "",
        role=row["role"],
        experience=int(row["experience"] or 0),
        level=int(row["level"]),
        version=row["version"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
