from __future__ import annotations

import json
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import text as sql_text, bindparam
from sqlalchemy.exc import DBAPIError

from winning.db import Database
from winning.db_init import (
    CIRCLES_TABLE,
    CIRCLE_MEMBERS_TABLE,
    CIRCLE_INVITES_TABLE,
    PROFILES_TABLE,
    GOALS_TABLE,
    MILESTONES_TABLE,
    HABITS_TABLE,
    HABIT_CHECKS_TABLE,
    ROUTINES_TABLE,
    TASKS_TABLE,
    DAY_NOTES_TABLE,
    MONTH_NOTES_TABLE,
    REVIEWS_TABLE,
    WINS_TABLE,
)
from winning.metrics import win_category
from winning.periods import parse_iso_date, parse_year_month
from winning.schemas import TASK_RECORD_ADAPTER, TaskType

logger = logging.getLogger(__name__)

ROUTINE_TYPES = ("morning", "evening")
GOAL_HORIZONS = {"long-term", "medium-term", "short-term"}
TASK_PRIORITIES = {"low", "medium", "high"}
TASK_STATUSES = {"planned", "in_progress", "done"}
WIN_SOURCES = {"manual", "task", "goal", "milestone"}
REVIEW_FIELDS = ["achievements", "lessons", "reflections", "next_focus", "top_outcomes"]
ARRAY_COLUMN_ERRORS = ("malformed array", "sized iterable container expected")

GOAL_COLUMNS = [
    "id",
    "user_id",
    "circle_id",
    "title",
    "description",
    "horizon",
    "deadline",
    "why",
    "action_plan",
    "strategy_notes",
    "completed",
    "completed_at",
    "created_at",
    "updated_at",
]
MILESTONE_COLUMNS = ["id", "goal_id", "title", "description", "due_week", "completed", "completed_at", "created_at"]
TASK_COLUMNS = [
    "id",
    "user_id",
    "circle_id",
    "title",
    "description",
    "type",
    "date",
    "time",
    "priority",
    "status",
    "linked_goal_id",
    "linked_milestone_id",
    "created_at",
    "updated_at",
]
WIN_COLUMNS = [
    "id",
    "user_id",
    "circle_id",
    "title",
    "description",
    "source",
    "task_id",
    "goal_id",
    "milestone_id",
    "created_at",
]

INVALID_INVITE = "Invalid or expired invite"


class NotFoundError(LookupError):
    """Row missing, or not owned by the requesting user."""


def _new_id() -> str:
    return uuid4().hex


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_title(value, field: str = "Title", limit: int = 200) -> str:
    clean = " ".join(str(value or "").split()).strip()[:limit]
    if not clean:
        raise ValueError(f"{field} cannot be empty")
    return clean


def _optional_text(value):
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    value_str = str(value)
    return value_str if value_str.strip() else None


def _normalize_time_value(value):
    if value is None:
        return None
    if hasattr(value, "strftime"):
        return value.strftime("%H:%M")
    value_str = str(value).strip()
    return value_str[:5] if value_str else None


def _normalize_priority(value):
    if value in TASK_PRIORITIES:
        return value
    return "medium"


def _normalize_status(value) -> str:
    if value == "open":
        return "planned"
    if value not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {value}")
    return value


def _expanding(sql: str, *names: str):
    return sql_text(sql).bindparams(*[bindparam(name, expanding=True) for name in names])


def _row_with_bools(row, *keys) -> dict:
    payload = dict(row)
    for key in keys:
        payload[key] = bool(int(payload.get(key) or 0))
    return payload


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


async def get_profile(db: Database, user_id: str) -> dict:
    async with db.sessionmaker() as session:
        row = (await session.execute(
            sql_text(f"SELECT user_id, display_name, updated_at FROM {PROFILES_TABLE} WHERE user_id = :user_id"),
            {"user_id": user_id},
        )).mappings().fetchone()
    return dict(row) if row else {"user_id": user_id, "display_name": None, "updated_at": None}


async def set_display_name(db: Database, user_id: str, display_name: str) -> dict:
    clean = _clean_title(display_name, field="Display name", limit=60)
    record = {"user_id": user_id, "display_name": clean, "updated_at": _now_iso()}
    async with db.sessionmaker() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {PROFILES_TABLE} (user_id, display_name, updated_at)
                VALUES (:user_id, :display_name, :updated_at)
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name = EXCLUDED.display_name,
                    updated_at = EXCLUDED.updated_at
                """
            ),
            record,
        )
        await session.commit()
    return record


async def list_display_names(db: Database, user_ids: list[str]) -> dict[str, str]:
    if not user_ids:
        return {}
    stmt = _expanding(
        f"SELECT user_id, display_name FROM {PROFILES_TABLE} WHERE user_id IN :user_ids",
        "user_ids",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(stmt, {"user_ids": list(user_ids)})).mappings().all()
    return {row["user_id"]: row["display_name"] for row in rows if row["display_name"]}


# ---------------------------------------------------------------------------
# Circles and invites
# ---------------------------------------------------------------------------


async def create_circle(db: Database, user_id: str, name: str) -> dict:
    clean = _clean_title(name, field="Name", limit=80)
    now = _now_iso()
    circle = {"id": _new_id(), "name": clean, "created_by": user_id, "created_at": now}
    async with db.sessionmaker() as session:
        await session.execute(
            sql_text(
                f"INSERT INTO {CIRCLES_TABLE} (id, name, created_by, created_at) "
                "VALUES (:id, :name, :created_by, :created_at)"
            ),
            circle,
        )
        await session.execute(
            sql_text(
                f"INSERT INTO {CIRCLE_MEMBERS_TABLE} (circle_id, user_id, role, joined_at) "
                "VALUES (:circle_id, :user_id, 'owner', :joined_at)"
            ),
            {"circle_id": circle["id"], "user_id": user_id, "joined_at": now},
        )
        await session.commit()
    logger.info("Circle %s created by %s", circle["id"], user_id)
    return circle


async def get_circle(db: Database, circle_id: str) -> dict:
    async with db.sessionmaker() as session:
        row = (await session.execute(
            sql_text(f"SELECT id, name, created_by, created_at FROM {CIRCLES_TABLE} WHERE id = :id"),
            {"id": circle_id},
        )).mappings().fetchone()
    return dict(row) if row else {}


async def list_memberships(db: Database, user_id: str) -> list[dict]:
    async with db.sessionmaker() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT m.circle_id, m.role, m.joined_at, c.name
                FROM {CIRCLE_MEMBERS_TABLE} m
                JOIN {CIRCLES_TABLE} c ON c.id = m.circle_id
                WHERE m.user_id = :user_id
                ORDER BY m.joined_at DESC
                """
            ),
            {"user_id": user_id},
        )).mappings().all()
    return [dict(row) for row in rows]


async def list_circle_members(db: Database, circle_id: str) -> list[dict]:
    async with db.sessionmaker() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT circle_id, user_id, role, joined_at
                FROM {CIRCLE_MEMBERS_TABLE}
                WHERE circle_id = :circle_id
                ORDER BY joined_at ASC
                """
            ),
            {"circle_id": circle_id},
        )).mappings().all()
    return [dict(row) for row in rows]


async def require_membership(db: Database, circle_id: str, user_id: str, role: str | None = None) -> dict:
    """Return the viewer's membership row or raise.

    ``LookupError`` when the circle does not exist, ``PermissionError`` when the
    user is not a member or lacks ``role``.
    """
    async with db.sessionmaker() as session:
        circle = (await session.execute(
            sql_text(f"SELECT id FROM {CIRCLES_TABLE} WHERE id = :id"),
            {"id": circle_id},
        )).fetchone()
        if not circle:
            raise NotFoundError("Circle not found")
        row = (await session.execute(
            sql_text(
                f"SELECT circle_id, user_id, role, joined_at FROM {CIRCLE_MEMBERS_TABLE} "
                "WHERE circle_id = :circle_id AND user_id = :user_id"
            ),
            {"circle_id": circle_id, "user_id": user_id},
        )).mappings().fetchone()
    if not row:
        raise PermissionError("Not a member of this circle")
    if role and row["role"] != role:
        raise PermissionError(f"Only a circle {role} can do this")
    return dict(row)


async def create_invite(db: Database, circle_id: str, inviter_id: str, role: str = "member", ttl_hours: int = 72) -> dict:
    await require_membership(db, circle_id, inviter_id, role="owner")
    if role not in {"owner", "member"}:
        raise ValueError(f"Invalid role: {role}")
    now = datetime.now(timezone.utc)
    record = {
        "token": secrets.token_urlsafe(24),
        "circle_id": circle_id,
        "inviter_id": inviter_id,
        "role": role,
        "expires_at": (now + timedelta(hours=ttl_hours)).isoformat(),
        "created_at": now.isoformat(),
    }
    async with db.sessionmaker() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {CIRCLE_INVITES_TABLE} (token, circle_id, inviter_id, role, expires_at, created_at)
                VALUES (:token, :circle_id, :inviter_id, :role, :expires_at, :created_at)
                """
            ),
            record,
        )
        await session.commit()
    return record


async def accept_invite(db: Database, token: str, user_id: str, now: datetime | None = None) -> str:
    """Redeem ``token`` for ``user_id`` and return the circle id.

    The token is claimed with a conditional update so a used or expired
    token never yields a membership row.
    """
    clean_token = str(token or "").strip()
    if not clean_token:
        raise ValueError(INVALID_INVITE)
    now_iso = (now or datetime.now(timezone.utc)).isoformat()
    async with db.sessionmaker() as session:
        invite = (await session.execute(
            sql_text(
                f"SELECT token, circle_id, role, expires_at, used_at FROM {CIRCLE_INVITES_TABLE} WHERE token = :token"
            ),
            {"token": clean_token},
        )).mappings().fetchone()
        if not invite:
            raise ValueError(INVALID_INVITE)
        existing = (await session.execute(
            sql_text(
                f"SELECT role FROM {CIRCLE_MEMBERS_TABLE} WHERE circle_id = :circle_id AND user_id = :user_id"
            ),
            {"circle_id": invite["circle_id"], "user_id": user_id},
        )).fetchone()
        if existing:
            return invite["circle_id"]
        claimed = await session.execute(
            sql_text(
                f"""
                UPDATE {CIRCLE_INVITES_TABLE}
                SET used_at = :now, used_by = :user_id
                WHERE token = :token AND used_at IS NULL AND expires_at > :now
                """
            ),
            {"token": clean_token, "user_id": user_id, "now": now_iso},
        )
        if claimed.rowcount != 1:
            await session.rollback()
            raise ValueError(INVALID_INVITE)
        await session.execute(
            sql_text(
                f"INSERT INTO {CIRCLE_MEMBERS_TABLE} (circle_id, user_id, role, joined_at) "
                "VALUES (:circle_id, :user_id, :role, :joined_at)"
            ),
            {"circle_id": invite["circle_id"], "user_id": user_id, "role": invite["role"], "joined_at": now_iso},
        )
        await session.commit()
    logger.info("User %s joined circle %s via invite", user_id, invite["circle_id"])
    return invite["circle_id"]


# ---------------------------------------------------------------------------
# Wins (shared helpers used inside other transactions)
# ---------------------------------------------------------------------------


async def _insert_win(session, user_id: str, title: str, description, source: str, task_id=None, goal_id=None, milestone_id=None) -> dict:
    record = {
        "id": _new_id(),
        "user_id": user_id,
        "circle_id": None,
        "title": title,
        "description": description,
        "source": source,
        "task_id": task_id,
        "goal_id": goal_id,
        "milestone_id": milestone_id,
        "created_at": _now_iso(),
    }
    await session.execute(
        sql_text(
            f"""
            INSERT INTO {WINS_TABLE}
            ({', '.join(WIN_COLUMNS)})
            VALUES ({', '.join(':' + col for col in WIN_COLUMNS)})
            """
        ),
        record,
    )
    return record


async def _ensure_derived_win(session, source: str, link_column: str, link_id: str, **fields) -> bool:
    exists = (await session.execute(
        sql_text(f"SELECT id FROM {WINS_TABLE} WHERE source = :source AND {link_column} = :link_id LIMIT 1"),
        {"source": source, "link_id": link_id},
    )).fetchone()
    if exists:
        return False
    await _insert_win(session, source=source, **fields)
    return True


async def _delete_derived_wins(session, source: str, link_column: str, link_ids: list[str]) -> int:
    if not link_ids:
        return 0
    result = await session.execute(
        _expanding(
            f"DELETE FROM {WINS_TABLE} WHERE source = :source AND {link_column} IN :link_ids",
            "link_ids",
        ),
        {"source": source, "link_ids": list(link_ids)},
    )
    return int(result.rowcount or 0)


def _task_win_description(task_type: str, description: str | None) -> str | None:
    if task_type == TaskType.WEEK.value:
        return "Completed weekly task" + (f": {description}" if description else "")
    return description or None


# ---------------------------------------------------------------------------
# Goals and milestones
# ---------------------------------------------------------------------------


async def _fetch_goal(session, user_id: str, goal_id: str) -> dict:
    row = (await session.execute(
        sql_text(f"SELECT {', '.join(GOAL_COLUMNS)} FROM {GOALS_TABLE} WHERE id = :id AND user_id = :user_id"),
        {"id": goal_id, "user_id": user_id},
    )).mappings().fetchone()
    if not row:
        raise NotFoundError("Goal not found")
    return _row_with_bools(row, "completed")


async def _fetch_milestone(session, user_id: str, milestone_id: str) -> dict:
    row = (await session.execute(
        sql_text(
            f"""
            SELECT {', '.join('m.' + col for col in MILESTONE_COLUMNS)}
            FROM {MILESTONES_TABLE} m
            JOIN {GOALS_TABLE} g ON g.id = m.goal_id
            WHERE m.id = :id AND g.user_id = :user_id
            """
        ),
        {"id": milestone_id, "user_id": user_id},
    )).mappings().fetchone()
    if not row:
        raise NotFoundError("Milestone not found")
    return _row_with_bools(row, "completed")


async def list_goals(db: Database, user_ids: list[str]) -> list[dict]:
    if not user_ids:
        return []
    goals_stmt = _expanding(
        f"""
        SELECT {', '.join(GOAL_COLUMNS)}
        FROM {GOALS_TABLE}
        WHERE user_id IN :user_ids AND circle_id IS NULL
        ORDER BY created_at DESC
        """,
        "user_ids",
    )
    async with db.sessionmaker() as session:
        goal_rows = (await session.execute(goals_stmt, {"user_ids": list(user_ids)})).mappings().all()
        goals = [_row_with_bools(row, "completed") for row in goal_rows]
        goal_ids = [goal["id"] for goal in goals]
        milestone_rows = []
        if goal_ids:
            milestone_rows = (await session.execute(
                _expanding(
                    f"""
                    SELECT {', '.join(MILESTONE_COLUMNS)}
                    FROM {MILESTONES_TABLE}
                    WHERE goal_id IN :goal_ids
                    ORDER BY created_at ASC
                    """,
                    "goal_ids",
                ),
                {"goal_ids": goal_ids},
            )).mappings().all()
    by_goal: dict[str, list[dict]] = {goal_id: [] for goal_id in goal_ids}
    for row in milestone_rows:
        by_goal.setdefault(row["goal_id"], []).append(_row_with_bools(row, "completed"))
    for goal in goals:
        goal["milestones"] = by_goal.get(goal["id"], [])
    return goals


async def get_goal(db: Database, user_id: str, goal_id: str) -> dict:
    async with db.sessionmaker() as session:
        goal = await _fetch_goal(session, user_id, goal_id)
        rows = (await session.execute(
            sql_text(
                f"SELECT {', '.join(MILESTONE_COLUMNS)} FROM {MILESTONES_TABLE} "
                "WHERE goal_id = :goal_id ORDER BY created_at ASC"
            ),
            {"goal_id": goal_id},
        )).mappings().all()
    goal["milestones"] = [_row_with_bools(row, "completed") for row in rows]
    return goal


def _goal_fields(payload: dict) -> dict:
    fields = {}
    for key, value in payload.items():
        if key == "title":
            fields[key] = _clean_title(value)
        elif key == "horizon":
            if value not in GOAL_HORIZONS:
                raise ValueError(f"Invalid horizon: {value}")
            fields[key] = value
        elif key in {"description", "deadline", "why", "action_plan", "strategy_notes"}:
            fields[key] = _optional_text(value)
    return fields


async def create_goal(db: Database, user_id: str, payload: dict) -> dict:
    fields = _goal_fields({"horizon": "long-term", **payload})
    if "title" not in fields:
        raise ValueError("Title cannot be empty")
    now = _now_iso()
    record = {
        "id": _new_id(),
        "user_id": user_id,
        "circle_id": None,
        "title": fields["title"],
        "description": fields.get("description"),
        "horizon": fields["horizon"],
        "deadline": fields.get("deadline"),
        "why": fields.get("why"),
        "action_plan": fields.get("action_plan"),
        "strategy_notes": fields.get("strategy_notes"),
        "completed": 0,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    async with db.sessionmaker() as session:
        await session.execute(
            sql_text(
                f"INSERT INTO {GOALS_TABLE} ({', '.join(GOAL_COLUMNS)}) "
                f"VALUES ({', '.join(':' + col for col in GOAL_COLUMNS)})"
            ),
            record,
        )
        await session.commit()
    return {**record, "completed": False, "milestones": []}


async def update_goal(db: Database, user_id: str, goal_id: str, patch: dict) -> dict:
    fields = _goal_fields(patch)
    async with db.sessionmaker() as session:
        await _fetch_goal(session, user_id, goal_id)
        if fields:
            fields["updated_at"] = _now_iso()
            updates = ", ".join(f"{key} = :{key}" for key in fields)
            await session.execute(
                sql_text(f"UPDATE {GOALS_TABLE} SET {updates} WHERE id = :id AND user_id = :user_id"),
                {**fields, "id": goal_id, "user_id": user_id},
            )
            await session.commit()
    return await get_goal(db, user_id, goal_id)


async def delete_goal(db: Database, user_id: str, goal_id: str) -> None:
    async with db.sessionmaker() as session:
        await _fetch_goal(session, user_id, goal_id)
        milestone_ids = [
            row[0]
            for row in (await session.execute(
                sql_text(f"SELECT id FROM {MILESTONES_TABLE} WHERE goal_id = :goal_id"),
                {"goal_id": goal_id},
            )).fetchall()
        ]
        await _delete_derived_wins(session, "goal", "goal_id", [goal_id])
        await _delete_derived_wins(session, "milestone", "milestone_id", milestone_ids)
        await session.execute(
            sql_text(f"UPDATE {WINS_TABLE} SET goal_id = NULL, milestone_id = NULL WHERE goal_id = :goal_id"),
            {"goal_id": goal_id},
        )
        await session.execute(
            sql_text(
                f"UPDATE {TASKS_TABLE} SET linked_goal_id = NULL, linked_milestone_id = NULL "
                "WHERE user_id = :user_id AND linked_goal_id = :goal_id"
            ),
            {"user_id": user_id, "goal_id": goal_id},
        )
        await session.execute(
            sql_text(f"DELETE FROM {MILESTONES_TABLE} WHERE goal_id = :goal_id"),
            {"goal_id": goal_id},
        )
        await session.execute(
            sql_text(f"DELETE FROM {GOALS_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": goal_id, "user_id": user_id},
        )
        await session.commit()


async def set_goal_completed(db: Database, user_id: str, goal_id: str, completed: bool) -> dict:
    async with db.sessionmaker() as session:
        goal = await _fetch_goal(session, user_id, goal_id)
        now = _now_iso()
        await session.execute(
            sql_text(
                f"UPDATE {GOALS_TABLE} SET completed = :completed, completed_at = :completed_at, updated_at = :now "
                "WHERE id = :id AND user_id = :user_id"
            ),
            {
                "completed": int(bool(completed)),
                "completed_at": now if completed else None,
                "now": now,
                "id": goal_id,
                "user_id": user_id,
            },
        )
        if completed:
            created = await _ensure_derived_win(
                session,
                "goal",
                "goal_id",
                goal_id,
                user_id=user_id,
                title=goal["title"],
                description="Completed goal",
                goal_id=goal_id,
            )
            if created:
                logger.info("Win recorded for goal %s", goal_id)
        else:
            await _delete_derived_wins(session, "goal", "goal_id", [goal_id])
        await session.commit()
    return await get_goal(db, user_id, goal_id)


async def create_milestone(db: Database, user_id: str, goal_id: str, payload: dict) -> dict:
    record = {
        "id": _new_id(),
        "goal_id": goal_id,
        "title": _clean_title(payload.get("title")),
        "description": _optional_text(payload.get("description")),
        "due_week": _optional_text(payload.get("due_week")),
        "completed": 0,
        "completed_at": None,
        "created_at": _now_iso(),
    }
    async with db.sessionmaker() as session:
        await _fetch_goal(session, user_id, goal_id)
        await session.execute(
            sql_text(
                f"INSERT INTO {MILESTONES_TABLE} ({', '.join(MILESTONE_COLUMNS)}) "
                f"VALUES ({', '.join(':' + col for col in MILESTONE_COLUMNS)})"
            ),
            record,
        )
        await session.commit()
    return {**record, "completed": False}


async def update_milestone(db: Database, user_id: str, milestone_id: str, patch: dict) -> dict:
    fields = {}
    for key, value in patch.items():
        if key == "title":
            fields[key] = _clean_title(value)
        elif key in {"description", "due_week"}:
            fields[key] = _optional_text(value)
    async with db.sessionmaker() as session:
        await _fetch_milestone(session, user_id, milestone_id)
        if fields:
            updates = ", ".join(f"{key} = :{key}" for key in fields)
            await session.execute(
                sql_text(f"UPDATE {MILESTONES_TABLE} SET {updates} WHERE id = :id"),
                {**fields, "id": milestone_id},
            )
            await session.commit()
        return await _fetch_milestone(session, user_id, milestone_id)


async def delete_milestone(db: Database, user_id: str, milestone_id: str) -> None:
    async with db.sessionmaker() as session:
        await _fetch_milestone(session, user_id, milestone_id)
        await _delete_derived_wins(session, "milestone", "milestone_id", [milestone_id])
        await session.execute(
            sql_text(f"UPDATE {WINS_TABLE} SET milestone_id = NULL WHERE milestone_id = :id"),
            {"id": milestone_id},
        )
        await session.execute(
            sql_text(
                f"UPDATE {TASKS_TABLE} SET linked_milestone_id = NULL "
                "WHERE user_id = :user_id AND linked_milestone_id = :id"
            ),
            {"user_id": user_id, "id": milestone_id},
        )
        await session.execute(sql_text(f"DELETE FROM {MILESTONES_TABLE} WHERE id = :id"), {"id": milestone_id})
        await session.commit()


async def set_milestone_completed(db: Database, user_id: str, milestone_id: str, completed: bool) -> dict:
    async with db.sessionmaker() as session:
        milestone = await _fetch_milestone(session, user_id, milestone_id)
        await session.execute(
            sql_text(
                f"UPDATE {MILESTONES_TABLE} SET completed = :completed, completed_at = :completed_at WHERE id = :id"
            ),
            {
                "completed": int(bool(completed)),
                "completed_at": _now_iso() if completed else None,
                "id": milestone_id,
            },
        )
        if completed:
            created = await _ensure_derived_win(
                session,
                "milestone",
                "milestone_id",
                milestone_id,
                user_id=user_id,
                title=milestone["title"],
                description="Completed milestone",
                goal_id=milestone["goal_id"],
                milestone_id=milestone_id,
            )
            if created:
                logger.info("Win recorded for milestone %s", milestone_id)
        else:
            await _delete_derived_wins(session, "milestone", "milestone_id", [milestone_id])
        await session.commit()
        return await _fetch_milestone(session, user_id, milestone_id)


# ---------------------------------------------------------------------------
# Habits
# ---------------------------------------------------------------------------


async def _fetch_habit(session, user_id: str, habit_id: str) -> dict:
    row = (await session.execute(
        sql_text(
            f"SELECT id, user_id, circle_id, month_year, name, created_at FROM {HABITS_TABLE} "
            "WHERE id = :id AND user_id = :user_id"
        ),
        {"id": habit_id, "user_id": user_id},
    )).mappings().fetchone()
    if not row:
        raise NotFoundError("Habit not found")
    return dict(row)


async def list_habits(db: Database, user_ids: list[str], month_year: str) -> list[dict]:
    parse_year_month(month_year)
    if not user_ids:
        return []
    async with db.sessionmaker() as session:
        habit_rows = (await session.execute(
            _expanding(
                f"""
                SELECT id, user_id, circle_id, month_year, name, created_at
                FROM {HABITS_TABLE}
                WHERE user_id IN :user_ids AND month_year = :month_year AND circle_id IS NULL
                ORDER BY created_at ASC
                """,
                "user_ids",
            ),
            {"user_ids": list(user_ids), "month_year": month_year},
        )).mappings().all()
        habits = [dict(row) for row in habit_rows]
        habit_ids = [habit["id"] for habit in habits]
        check_rows = []
        if habit_ids:
            check_rows = (await session.execute(
                _expanding(
                    f"""
                    SELECT habit_id, date, completed
                    FROM {HABIT_CHECKS_TABLE}
                    WHERE habit_id IN :habit_ids
                    ORDER BY date ASC
                    """,
                    "habit_ids",
                ),
                {"habit_ids": habit_ids},
            )).mappings().all()
    by_habit: dict[str, list[dict]] = {habit_id: [] for habit_id in habit_ids}
    for row in check_rows:
        by_habit.setdefault(row["habit_id"], []).append(
            {"date": row["date"], "completed": bool(int(row["completed"] or 0))}
        )
    for habit in habits:
        habit["checks"] = by_habit.get(habit["id"], [])
    return habits


async def create_habit(db: Database, user_id: str, name: str, month_year: str, limit: int = 10) -> dict:
    parse_year_month(month_year)
    clean = _clean_title(name, field="Habit name", limit=60)
    record = {
        "id": _new_id(),
        "user_id": user_id,
        "circle_id": None,
        "month_year": month_year,
        "name": clean,
        "created_at": _now_iso(),
    }
    async with db.sessionmaker() as session:
        count = (await session.execute(
            sql_text(
                f"SELECT COUNT(*) FROM {HABITS_TABLE} "
                "WHERE user_id = :user_id AND month_year = :month_year AND circle_id IS NULL"
            ),
            {"user_id": user_id, "month_year": month_year},
        )).scalar_one()
        if int(count or 0) >= limit:
            raise ValueError(f"Habit limit of {limit} per month reached")
        await session.execute(
            sql_text(
                f"INSERT INTO {HABITS_TABLE} (id, user_id, circle_id, month_year, name, created_at) "
                "VALUES (:id, :user_id, :circle_id, :month_year, :name, :created_at)"
            ),
            record,
        )
        await session.commit()
    return {**record, "checks": []}


async def rename_habit(db: Database, user_id: str, habit_id: str, name: str) -> dict:
    clean = _clean_title(name, field="Habit name", limit=60)
    async with db.sessionmaker() as session:
        habit = await _fetch_habit(session, user_id, habit_id)
        await session.execute(
            sql_text(f"UPDATE {HABITS_TABLE} SET name = :name WHERE id = :id AND user_id = :user_id"),
            {"name": clean, "id": habit_id, "user_id": user_id},
        )
        await session.commit()
    return {**habit, "name": clean}


async def delete_habit(db: Database, user_id: str, habit_id: str) -> None:
    async with db.sessionmaker() as session:
        await _fetch_habit(session, user_id, habit_id)
        await session.execute(
            sql_text(f"DELETE FROM {HABIT_CHECKS_TABLE} WHERE habit_id = :habit_id"),
            {"habit_id": habit_id},
        )
        await session.execute(
            sql_text(f"DELETE FROM {HABITS_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": habit_id, "user_id": user_id},
        )
        await session.commit()


async def set_habit_check(db: Database, user_id: str, habit_id: str, day_iso: str, completed: bool) -> bool:
    parse_iso_date(day_iso)
    async with db.sessionmaker() as session:
        habit = await _fetch_habit(session, user_id, habit_id)
        if not day_iso.startswith(habit["month_year"]):
            raise ValueError("Date is outside the habit's month")
        if completed:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {HABIT_CHECKS_TABLE} (id, habit_id, date, completed, created_at)
                    VALUES (:id, :habit_id, :date, 1, :created_at)
                    ON CONFLICT(habit_id, date) DO UPDATE SET completed = 1
                    """
                ),
                {"id": _new_id(), "habit_id": habit_id, "date": day_iso, "created_at": _now_iso()},
            )
        else:
            await session.execute(
                sql_text(f"DELETE FROM {HABIT_CHECKS_TABLE} WHERE habit_id = :habit_id AND date = :date"),
                {"habit_id": habit_id, "date": day_iso},
            )
        await session.commit()
    return bool(completed)


# ---------------------------------------------------------------------------
# Routines
# ---------------------------------------------------------------------------


def _decode_steps(raw) -> list[dict]:
    if isinstance(raw, list):
        items = raw
    else:
        try:
            items = json.loads(raw or "[]")
        except (TypeError, ValueError):
            items = []
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def normalize_steps(steps: list[dict]) -> list[dict]:
    """Validate an ordered step list, assigning ids to new steps."""
    clean = []
    seen = set()
    for step in steps or []:
        text = " ".join(str(step.get("text") or "").split()).strip()
        if not text:
            raise ValueError("Step text cannot be empty")
        step_id = str(step.get("id") or "").strip() or _new_id()
        if step_id in seen:
            raise ValueError(f"Duplicate step id: {step_id}")
        seen.add(step_id)
        duration = step.get("durationMinutes")
        if duration is not None:
            duration = int(duration)
            if duration < 0:
                raise ValueError("Step duration cannot be negative")
        dates = sorted({str(parse_iso_date(d)) for d in step.get("completedDates") or []})
        clean.append({"id": step_id, "text": text, "durationMinutes": duration, "completedDates": dates})
    return clean


def move_step(steps: list[dict], step_id: str, direction: str) -> list[dict]:
    items = list(steps)
    index = next((idx for idx, step in enumerate(items) if step.get("id") == step_id), -1)
    if index == -1:
        raise NotFoundError("Step not found")
    swap_with = index - 1 if direction == "up" else index + 1
    if swap_with < 0 or swap_with >= len(items):
        return items
    items[index], items[swap_with] = items[swap_with], items[index]
    return items


def set_step_completion(steps: list[dict], step_id: str, day_iso: str, completed: bool) -> list[dict]:
    updated = []
    found = False
    for step in steps:
        if step.get("id") != step_id:
            updated.append(step)
            continue
        found = True
        dates = set(step.get("completedDates") or [])
        if completed:
            dates.add(day_iso)
        else:
            dates.discard(day_iso)
        updated.append({**step, "completedDates": sorted(dates)})
    if not found:
        raise NotFoundError("Step not found")
    return updated


def _routine_row(row) -> dict:
    payload = dict(row)
    payload["steps"] = _decode_steps(payload.pop("steps_json", None))
    return payload


async def list_routines(db: Database, user_ids: list[str]) -> list[dict]:
    if not user_ids:
        return []
    stmt = _expanding(
        f"""
        SELECT id, user_id, circle_id, type, steps_json, created_at, updated_at
        FROM {ROUTINES_TABLE}
        WHERE user_id IN :user_ids AND circle_id IS NULL AND type IN :types
        ORDER BY created_at ASC
        """,
        "user_ids",
        "types",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(stmt, {"user_ids": list(user_ids), "types": list(ROUTINE_TYPES)})).mappings().all()
    return [_routine_row(row) for row in rows]


async def ensure_routines(db: Database, user_id: str) -> dict[str, dict]:
    now = _now_iso()
    async with db.sessionmaker() as session:
        for routine_type in ROUTINE_TYPES:
            await session.execute(
                sql_text(
                    f"""
                    INSERT INTO {ROUTINES_TABLE} (id, user_id, circle_id, type, steps_json, created_at, updated_at)
                    VALUES (:id, :user_id, NULL, :type, '[]', :now, :now)
                    ON CONFLICT(user_id, type) DO NOTHING
                    """
                ),
                {"id": _new_id(), "user_id": user_id, "type": routine_type, "now": now},
            )
        await session.commit()
    routines = await list_routines(db, [user_id])
    return {routine["type"]: routine for routine in routines}


async def _update_routine_steps(db: Database, user_id: str, routine_type: str, transform) -> dict:
    if routine_type not in ROUTINE_TYPES:
        raise ValueError(f"Invalid routine type: {routine_type}")
    await ensure_routines(db, user_id)
    async with db.sessionmaker() as session:
        row = (await session.execute(
            sql_text(
                f"SELECT id, user_id, circle_id, type, steps_json, created_at, updated_at FROM {ROUTINES_TABLE} "
                "WHERE user_id = :user_id AND type = :type"
            ),
            {"user_id": user_id, "type": routine_type},
        )).mappings().fetchone()
        routine = _routine_row(row)
        steps = transform(routine["steps"])
        now = _now_iso()
        await session.execute(
            sql_text(f"UPDATE {ROUTINES_TABLE} SET steps_json = :steps_json, updated_at = :now WHERE id = :id"),
            {"steps_json": json.dumps(steps, ensure_ascii=False), "now": now, "id": routine["id"]},
        )
        await session.commit()
    return {**routine, "steps": steps, "updated_at": now}


async def save_routine_steps(db: Database, user_id: str, routine_type: str, steps: list[dict]) -> dict:
    clean = normalize_steps(steps)
    return await _update_routine_steps(db, user_id, routine_type, lambda _current: clean)


async def move_routine_step(db: Database, user_id: str, routine_type: str, step_id: str, direction: str) -> dict:
    return await _update_routine_steps(db, user_id, routine_type, lambda steps: move_step(steps, step_id, direction))


async def set_routine_step_completion(
    db: Database, user_id: str, routine_type: str, step_id: str, day_iso: str, completed: bool
) -> dict:
    parse_iso_date(day_iso)
    return await _update_routine_steps(
        db,
        user_id,
        routine_type,
        lambda steps: set_step_completion(steps, step_id, day_iso, completed),
    )


# ---------------------------------------------------------------------------
# Tasks (to-dos, events, daily priority, week items)
# ---------------------------------------------------------------------------


def _task_record(row):
    return TASK_RECORD_ADAPTER.validate_python(dict(row))


async def _fetch_task(session, user_id: str, task_id: str, task_types=None):
    row = (await session.execute(
        sql_text(f"SELECT {', '.join(TASK_COLUMNS)} FROM {TASKS_TABLE} WHERE id = :id AND user_id = :user_id"),
        {"id": task_id, "user_id": user_id},
    )).mappings().fetchone()
    if not row or (task_types and row["type"] not in task_types):
        raise NotFoundError("Task not found")
    return _task_record(row)


async def list_tasks(
    db: Database,
    user_ids: list[str],
    task_types: list[str],
    start_iso: str,
    end_iso: str | None = None,
) -> list:
    if not user_ids:
        return []
    end_iso = end_iso or start_iso
    stmt = _expanding(
        f"""
        SELECT {', '.join(TASK_COLUMNS)}
        FROM {TASKS_TABLE}
        WHERE user_id IN :user_ids
          AND circle_id IS NULL
          AND type IN :task_types
          AND date BETWEEN :start_date AND :end_date
        ORDER BY date ASC, created_at ASC
        """,
        "user_ids",
        "task_types",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(
            stmt,
            {
                "user_ids": list(user_ids),
                "task_types": list(task_types),
                "start_date": start_iso,
                "end_date": end_iso,
            },
        )).mappings().all()
    return [_task_record(row) for row in rows]


async def get_task(db: Database, user_id: str, task_id: str, task_types=None):
    async with db.sessionmaker() as session:
        return await _fetch_task(session, user_id, task_id, task_types)


async def create_task(db: Database, user_id: str, task_type: TaskType, payload: dict):
    parse_iso_date(payload.get("date"))
    now = _now_iso()
    record = {
        "id": _new_id(),
        "user_id": user_id,
        "circle_id": None,
        "title": _clean_title(payload.get("title")),
        "description": _optional_text(payload.get("description")),
        "type": TaskType(task_type).value,
        "date": _optional_text(payload.get("date")),
        "time": _normalize_time_value(payload.get("time")),
        "priority": _normalize_priority(payload.get("priority")),
        "status": _normalize_status(payload.get("status") or "planned"),
        "linked_goal_id": payload.get("linked_goal_id"),
        "linked_milestone_id": payload.get("linked_milestone_id"),
        "created_at": now,
        "updated_at": now,
    }
    async with db.sessionmaker() as session:
        if record["linked_goal_id"]:
            await _fetch_goal(session, user_id, record["linked_goal_id"])
        if record["linked_milestone_id"]:
            await _fetch_milestone(session, user_id, record["linked_milestone_id"])
        await session.execute(
            sql_text(
                f"INSERT INTO {TASKS_TABLE} ({', '.join(TASK_COLUMNS)}) "
                f"VALUES ({', '.join(':' + col for col in TASK_COLUMNS)})"
            ),
            record,
        )
        await session.commit()
    return _task_record(record)


async def update_task(db: Database, user_id: str, task_id: str, patch: dict, task_types=None):
    allowed = {"title", "description", "date", "time", "priority", "linked_goal_id", "linked_milestone_id"}
    params = {"id": task_id, "user_id": user_id}
    updates = []
    for key, value in patch.items():
        if key not in allowed:
            continue
        if key == "title":
            params[key] = _clean_title(value)
        elif key == "date":
            parse_iso_date(value)
            params[key] = _optional_text(value)
        elif key == "time":
            params[key] = _normalize_time_value(value)
        elif key == "priority":
            params[key] = _normalize_priority(value)
        elif key == "description":
            params[key] = _optional_text(value)
        else:
            params[key] = value or None
        updates.append(f"{key} = :{key}")
    async with db.sessionmaker() as session:
        await _fetch_task(session, user_id, task_id, task_types)
        if params.get("linked_goal_id"):
            await _fetch_goal(session, user_id, params["linked_goal_id"])
        if params.get("linked_milestone_id"):
            await _fetch_milestone(session, user_id, params["linked_milestone_id"])
        if updates:
            updates.append("updated_at = :updated_at")
            params["updated_at"] = _now_iso()
            await session.execute(
                sql_text(f"UPDATE {TASKS_TABLE} SET {', '.join(updates)} WHERE id = :id AND user_id = :user_id"),
                params,
            )
            await session.commit()
        return await _fetch_task(session, user_id, task_id)


async def delete_task(db: Database, user_id: str, task_id: str, task_types=None) -> None:
    async with db.sessionmaker() as session:
        await _fetch_task(session, user_id, task_id, task_types)
        await _delete_derived_wins(session, "task", "task_id", [task_id])
        await session.execute(
            sql_text(f"UPDATE {WINS_TABLE} SET task_id = NULL WHERE task_id = :task_id"),
            {"task_id": task_id},
        )
        await session.execute(
            sql_text(f"DELETE FROM {TASKS_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": task_id, "user_id": user_id},
        )
        await session.commit()


async def set_task_status(db: Database, user_id: str, task_id: str, status: str, task_types=None):
    """Change a to-do or week item's status and keep its derived win in step."""
    next_status = _normalize_status(status)
    async with db.sessionmaker() as session:
        task = await _fetch_task(session, user_id, task_id, task_types or ["task", "week"])
        await session.execute(
            sql_text(
                f"UPDATE {TASKS_TABLE} SET status = :status, updated_at = :updated_at "
                "WHERE id = :id AND user_id = :user_id"
            ),
            {"status": next_status, "updated_at": _now_iso(), "id": task_id, "user_id": user_id},
        )
        if next_status == "done":
            created = await _ensure_derived_win(
                session,
                "task",
                "task_id",
                task_id,
                user_id=user_id,
                title=task.title,
                description=_task_win_description(task.type, task.description),
                task_id=task_id,
                goal_id=task.linked_goal_id,
            )
            if created:
                logger.info("Win recorded for task %s", task_id)
        elif task.is_done:
            removed = await _delete_derived_wins(session, "task", "task_id", [task_id])
            logger.info("Removed %s win(s) for reopened task %s", removed, task_id)
        await session.commit()
        return await _fetch_task(session, user_id, task_id)


async def toggle_todo(db: Database, user_id: str, task_id: str):
    task = await get_task(db, user_id, task_id, ["task"])
    return await set_task_status(db, user_id, task_id, "planned" if task.is_done else "done", ["task"])


async def get_priority(db: Database, user_id: str, day_iso: str):
    items = await list_tasks(db, [user_id], [TaskType.PRIORITY.value], day_iso)
    return items[0] if items else None


async def save_priority(db: Database, user_id: str, day_iso: str, title: str):
    """Update the day's priority, or create it when ``title`` is non-empty."""
    parse_iso_date(day_iso)
    clean = " ".join(str(title or "").split()).strip()
    existing = await get_priority(db, user_id, day_iso)
    if existing:
        async with db.sessionmaker() as session:
            await session.execute(
                sql_text(
                    f"UPDATE {TASKS_TABLE} SET title = :title, updated_at = :updated_at "
                    "WHERE id = :id AND user_id = :user_id"
                ),
                {"title": clean, "updated_at": _now_iso(), "id": existing.id, "user_id": user_id},
            )
            await session.commit()
        return await get_priority(db, user_id, day_iso)
    if not clean:
        return None
    return await create_task(
        db,
        user_id,
        TaskType.PRIORITY,
        {"title": clean, "date": day_iso, "priority": "high", "status": "planned"},
    )


async def count_open_todos(db: Database, user_id: str, day_iso: str) -> int:
    async with db.sessionmaker() as session:
        count = (await session.execute(
            sql_text(
                f"""
                SELECT COUNT(*) FROM {TASKS_TABLE}
                WHERE user_id = :user_id
                  AND circle_id IS NULL
                  AND type = 'task'
                  AND date = :day_iso
                  AND COALESCE(status, 'planned') != 'done'
                """
            ),
            {"user_id": user_id, "day_iso": day_iso},
        )).scalar_one()
    return int(count or 0)


# ---------------------------------------------------------------------------
# Day, month and week notes
# ---------------------------------------------------------------------------


def _notes_upsert(table: str, keys: dict, patch: dict, conflict: str) -> tuple:
    clean_patch = dict(patch)
    clean_patch["updated_at"] = _now_iso()
    columns = list(keys.keys()) + list(clean_patch.keys())
    placeholders = ", ".join(f":{col}" for col in columns)
    updates = ", ".join(f"{col}=EXCLUDED.{col}" for col in clean_patch.keys())
    statement = (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT({conflict}) DO UPDATE SET {updates}"
    )
    return sql_text(statement), {**keys, **clean_patch}


async def list_day_notes(db: Database, user_ids: list[str], day_iso: str) -> dict[str, dict]:
    if not user_ids:
        return {}
    stmt = _expanding(
        f"SELECT user_id, date, schedule, notes, updated_at FROM {DAY_NOTES_TABLE} "
        "WHERE user_id IN :user_ids AND date = :date",
        "user_ids",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(stmt, {"user_ids": list(user_ids), "date": day_iso})).mappings().all()
    return {row["user_id"]: dict(row) for row in rows}


async def get_day_notes(db: Database, user_id: str, day_iso: str) -> dict:
    row = (await list_day_notes(db, [user_id], day_iso)).get(user_id) or {}
    return {"schedule": row.get("schedule") or "", "notes": row.get("notes") or ""}


async def patch_day_notes(db: Database, user_id: str, day_iso: str, patch: dict) -> dict:
    parse_iso_date(day_iso)
    fields = {key: str(value) for key, value in patch.items() if key in {"schedule", "notes"} and value is not None}
    if not fields:
        raise ValueError("No changes provided")
    statement, params = _notes_upsert(DAY_NOTES_TABLE, {"user_id": user_id, "date": day_iso}, fields, "user_id, date")
    async with db.sessionmaker() as session:
        await session.execute(statement, params)
        await session.commit()
    return await get_day_notes(db, user_id, day_iso)


async def get_month_notes(db: Database, user_id: str, month_year: str) -> dict:
    parse_year_month(month_year)
    async with db.sessionmaker() as session:
        row = (await session.execute(
            sql_text(
                f"SELECT goals, review FROM {MONTH_NOTES_TABLE} WHERE user_id = :user_id AND month_year = :month_year"
            ),
            {"user_id": user_id, "month_year": month_year},
        )).mappings().fetchone()
    row = dict(row) if row else {}
    return {"goals": row.get("goals") or "", "review": row.get("review") or ""}


async def set_month_note(db: Database, user_id: str, month_year: str, field: str, value: str) -> dict:
    parse_year_month(month_year)
    if field not in {"goals", "review"}:
        raise ValueError(f"Invalid month note field: {field}")
    statement, params = _notes_upsert(
        MONTH_NOTES_TABLE,
        {"user_id": user_id, "month_year": month_year},
        {field: str(value or "")},
        "user_id, month_year",
    )
    async with db.sessionmaker() as session:
        await session.execute(statement, params)
        await session.commit()
    return await get_month_notes(db, user_id, month_year)


def _review_payload(row) -> dict:
    row = dict(row or {})
    payload = {}
    for field in REVIEW_FIELDS:
        value = row.get(field)
        if isinstance(value, (list, tuple)):
            value = "\n".join(str(item) for item in value)
        payload[field] = value or ""
    return payload


async def list_reviews(db: Database, user_ids: list[str], week_starts: list[str]) -> list[dict]:
    if not user_ids or not week_starts:
        return []
    stmt = _expanding(
        f"""
        SELECT user_id, week_start, {', '.join(REVIEW_FIELDS)}, created_at, updated_at
        FROM {REVIEWS_TABLE}
        WHERE user_id IN :user_ids AND week_start IN :week_starts
        """,
        "user_ids",
        "week_starts",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(
            stmt, {"user_ids": list(user_ids), "week_starts": list(week_starts)}
        )).mappings().all()
    return [{"user_id": row["user_id"], "week_start": row["week_start"], **_review_payload(row)} for row in rows]


async def get_review(db: Database, user_id: str, week_start: str) -> dict:
    rows = await list_reviews(db, [user_id], [week_start])
    return _review_payload(rows[0] if rows else None)


async def _upsert_review(db: Database, user_id: str, week_start: str, fields: dict) -> None:
    now = _now_iso()
    params = {"user_id": user_id, "week_start": week_start, "created_at": now, "updated_at": now, **fields}
    updates = ", ".join(f"{field}=EXCLUDED.{field}" for field in REVIEW_FIELDS)
    async with db.sessionmaker() as session:
        await session.execute(
            sql_text(
                f"""
                INSERT INTO {REVIEWS_TABLE}
                    (user_id, week_start, {', '.join(REVIEW_FIELDS)}, created_at, updated_at)
                VALUES
                    (:user_id, :week_start, {', '.join(':' + field for field in REVIEW_FIELDS)}, :created_at, :updated_at)
                ON CONFLICT(user_id, week_start) DO UPDATE SET {updates}, updated_at=EXCLUDED.updated_at
                """
            ),
            params,
        )
        await session.commit()


def split_outcomes(text: str) -> list[str]:
    return [line for line in re.split(r"\r?\n", text or "") if line]


def _is_array_column_error(exc: DBAPIError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in ARRAY_COLUMN_ERRORS)


async def save_review(db: Database, user_id: str, week_start: str, payload: dict) -> dict:
    """Upsert one weekly review.

    ``top_outcomes`` is written as text. Databases that still declare the column
    as ``text[]`` reject that, either server side ("malformed array literal") or,
    with asyncpg, while encoding the parameter ("sized iterable container
    expected"). The save is then repeated once with the outcomes split into lines.
    """
    parse_iso_date(week_start)
    fields = {field: str(payload.get(field) or "") for field in REVIEW_FIELDS}
    try:
        await _upsert_review(db, user_id, week_start, fields)
    except DBAPIError as exc:
        if not _is_array_column_error(exc):
            raise
        logger.warning("reviews.top_outcomes is an array column; retrying save for week %s", week_start)
        await _upsert_review(db, user_id, week_start, {**fields, "top_outcomes": split_outcomes(fields["top_outcomes"])})
    return await get_review(db, user_id, week_start)


# ---------------------------------------------------------------------------
# Wins
# ---------------------------------------------------------------------------


async def list_wins(db: Database, user_ids: list[str]) -> list[dict]:
    if not user_ids:
        return []
    stmt = _expanding(
        f"""
        SELECT {', '.join('w.' + col for col in WIN_COLUMNS)},
               g.title AS goal_title, g.horizon AS goal_horizon, m.title AS milestone_title
        FROM {WINS_TABLE} w
        LEFT JOIN {GOALS_TABLE} g ON g.id = w.goal_id
        LEFT JOIN {MILESTONES_TABLE} m ON m.id = w.milestone_id
        WHERE w.user_id IN :user_ids AND w.circle_id IS NULL
        ORDER BY w.created_at DESC
        """,
        "user_ids",
    )
    async with db.sessionmaker() as session:
        rows = (await session.execute(stmt, {"user_ids": list(user_ids)})).mappings().all()
    wins = []
    for row in rows:
        win = dict(row)
        win["category"] = win_category(win)
        wins.append(win)
    return wins


async def create_manual_win(db: Database, user_id: str, payload: dict) -> dict:
    title = _clean_title(payload.get("title"))
    goal_id = payload.get("goal_id") or None
    milestone_id = payload.get("milestone_id") or None
    async with db.sessionmaker() as session:
        if goal_id:
            await _fetch_goal(session, user_id, goal_id)
        if milestone_id:
            milestone = await _fetch_milestone(session, user_id, milestone_id)
            if goal_id and milestone["goal_id"] != goal_id:
                raise ValueError("Milestone does not belong to the selected goal")
            goal_id = milestone["goal_id"]
        record = await _insert_win(
            session,
            user_id=user_id,
            title=title,
            description=_optional_text(payload.get("description")),
            source="manual",
            goal_id=goal_id,
            milestone_id=milestone_id,
        )
        await session.commit()
    return {**record, "category": win_category(record)}


async def delete_win(db: Database, user_id: str, win_id: str) -> None:
    async with db.sessionmaker() as session:
        result = await session.execute(
            sql_text(f"DELETE FROM {WINS_TABLE} WHERE id = :id AND user_id = :user_id"),
            {"id": win_id, "user_id": user_id},
        )
        if result.rowcount != 1:
            await session.rollback()
            raise NotFoundError("Win not found")
        await session.commit()


# ---------------------------------------------------------------------------
# Win reconciliation
# ---------------------------------------------------------------------------


async def list_completions_without_win(db: Database, limit: int = 100) -> list[dict]:
    """Completed tasks, goals and milestones that have no derived win."""
    async with db.sessionmaker() as session:
        task_rows = (await session.execute(
            sql_text(
                f"""
                SELECT t.id, t.user_id, t.title, t.description, t.type, t.linked_goal_id
                FROM {TASKS_TABLE} t
                WHERE t.status = 'done'
                  AND t.type IN ('task', 'week')
                  AND NOT EXISTS (
                      SELECT 1 FROM {WINS_TABLE} w WHERE w.source = 'task' AND w.task_id = t.id
                  )
                ORDER BY t.updated_at ASC
                LIMIT :limit
                """
            ),
            {"limit": limit},
        )).mappings().all()
        goal_rows = (await session.execute(
            sql_text(
                f"""
                SELECT g.id, g.user_id, g.title
                FROM {GOALS_TABLE} g
                WHERE g.completed = 1
                  AND NOT EXISTS (
                      SELECT 1 FROM {WINS_TABLE} w WHERE w.source = 'goal' AND w.goal_id = g.id
                  )
                LIMIT :limit
                """
            ),
            {"limit": limit},
        )).mappings().all()
        milestone_rows = (await session.execute(
            sql_text(
                f"""
                SELECT m.id, m.goal_id, m.title, g.user_id
                FROM {MILESTONES_TABLE} m
                JOIN {GOALS_TABLE} g ON g.id = m.goal_id
                WHERE m.completed = 1
                  AND NOT EXISTS (
                      SELECT 1 FROM {WINS_TABLE} w WHERE w.source = 'milestone' AND w.milestone_id = m.id
                  )
                LIMIT :limit
                """
            ),
            {"limit": limit},
        )).mappings().all()
    missing = []
    for row in task_rows:
        missing.append(
            {
                "source": "task",
                "user_id": row["user_id"],
                "title": row["title"],
                "description": _task_win_description(row["type"], row["description"]),
                "task_id": row["id"],
                "goal_id": row["linked_goal_id"],
                "milestone_id": None,
            }
        )
    for row in goal_rows:
        missing.append(
            {
                "source": "goal",
                "user_id": row["user_id"],
                "title": row["title"],
                "description": "Completed goal",
                "task_id": None,
                "goal_id": row["id"],
                "milestone_id": None,
            }
        )
    for row in milestone_rows:
        missing.append(
            {
                "source": "milestone",
                "user_id": row["user_id"],
                "title": row["title"],
                "description": "Completed milestone",
                "task_id": None,
                "goal_id": row["goal_id"],
                "milestone_id": row["id"],
            }
        )
    return missing


async def list_stale_derived_wins(db: Database, limit: int = 100) -> list[dict]:
    """Derived wins whose source row is gone or no longer complete."""
    async with db.sessionmaker() as session:
        rows = (await session.execute(
            sql_text(
                f"""
                SELECT w.id, w.source, w.user_id FROM {WINS_TABLE} w
                LEFT JOIN {TASKS_TABLE} t ON t.id = w.task_id
                WHERE w.source = 'task' AND (t.id IS NULL OR COALESCE(t.status, 'planned') != 'done')
                UNION ALL
                SELECT w.id, w.source, w.user_id FROM {WINS_TABLE} w
                LEFT JOIN {GOALS_TABLE} g ON g.id = w.goal_id
                WHERE w.source = 'goal' AND (g.id IS NULL OR COALESCE(g.completed, 0) != 1)
                UNION ALL
                SELECT w.id, w.source, w.user_id FROM {WINS_TABLE} w
                LEFT JOIN {MILESTONES_TABLE} m ON m.id = w.milestone_id
                WHERE w.source = 'milestone' AND (m.id IS NULL OR COALESCE(m.completed, 0) != 1)
                LIMIT :limit
                """
            ),
            {"limit": limit},
        )).mappings().all()
    return [dict(row) for row in rows]


async def insert_derived_win(db: Database, record: dict) -> bool:
    source = record["source"]
    if source not in WIN_SOURCES - {"manual"}:
        raise ValueError(f"Invalid derived win source: {source}")
    link_column = {"task": "task_id", "goal": "goal_id", "milestone": "milestone_id"}[source]
    async with db.sessionmaker() as session:
        created = await _ensure_derived_win(
            session,
            source,
            link_column,
            record[link_column],
            user_id=record["user_id"],
            title=record["title"],
            description=record.get("description"),
            task_id=record.get("task_id"),
            goal_id=record.get("goal_id"),
            milestone_id=record.get("milestone_id"),
        )
        await session.commit()
    return created


async def delete_wins(db: Database, win_ids: list[str]) -> int:
    if not win_ids:
        return 0
    async with db.sessionmaker() as session:
        result = await session.execute(
            _expanding(f"DELETE FROM {WINS_TABLE} WHERE id IN :win_ids AND source != 'manual'", "win_ids"),
            {"win_ids": list(win_ids)},
        )
        await session.commit()
    return int(result.rowcount or 0)
