from __future__ import annotations

import logging

from sqlalchemy import text as sql_text
from sqlalchemy.exc import DBAPIError

from winning.db import Database

logger = logging.getLogger(__name__)

CIRCLES_TABLE = "circles"
CIRCLE_MEMBERS_TABLE = "circle_members"
CIRCLE_INVITES_TABLE = "circle_invites"
PROFILES_TABLE = "user_profiles"
GOALS_TABLE = "goals"
MILESTONES_TABLE = "milestones"
HABITS_TABLE = "habits"
HABIT_CHECKS_TABLE = "habit_checks"
ROUTINES_TABLE = "routines"
TASKS_TABLE = "tasks"
DAY_NOTES_TABLE = "day_notes"
MONTH_NOTES_TABLE = "month_notes"
REVIEWS_TABLE = "reviews"
WINS_TABLE = "wins"


TABLE_DDL = [
    f"""
    CREATE TABLE IF NOT EXISTS {CIRCLES_TABLE} (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {CIRCLE_MEMBERS_TABLE} (
        circle_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        joined_at TEXT NOT NULL,
        PRIMARY KEY (circle_id, user_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {CIRCLE_INVITES_TABLE} (
        token TEXT PRIMARY KEY,
        circle_id TEXT NOT NULL,
        inviter_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        expires_at TEXT NOT NULL,
        used_at TEXT,
        used_by TEXT,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {PROFILES_TABLE} (
        user_id TEXT PRIMARY KEY,
        display_name TEXT,
        updated_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {GOALS_TABLE} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        circle_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        horizon TEXT NOT NULL DEFAULT 'long-term',
        deadline TEXT,
        why TEXT,
        action_plan TEXT,
        strategy_notes TEXT,
        completed INTEGER DEFAULT 0,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MILESTONES_TABLE} (
        id TEXT PRIMARY KEY,
        goal_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        due_week TEXT,
        completed INTEGER DEFAULT 0,
        completed_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {HABITS_TABLE} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        circle_id TEXT,
        month_year TEXT NOT NULL,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {HABIT_CHECKS_TABLE} (
        id TEXT PRIMARY KEY,
        habit_id TEXT NOT NULL,
        date TEXT NOT NULL,
        completed INTEGER DEFAULT 1,
        created_at TEXT NOT NULL,
        UNIQUE (habit_id, date)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {ROUTINES_TABLE} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        circle_id TEXT,
        type TEXT NOT NULL,
        steps_json TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT,
        UNIQUE (user_id, type)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TASKS_TABLE} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        circle_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        type TEXT NOT NULL,
        date TEXT,
        time TEXT,
        priority TEXT DEFAULT 'medium',
        status TEXT DEFAULT 'planned',
        linked_goal_id TEXT,
        linked_milestone_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {DAY_NOTES_TABLE} (
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        schedule TEXT,
        notes TEXT,
        updated_at TEXT,
        PRIMARY KEY (user_id, date)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MONTH_NOTES_TABLE} (
        user_id TEXT NOT NULL,
        month_year TEXT NOT NULL,
        goals TEXT,
        review TEXT,
        updated_at TEXT,
        PRIMARY KEY (user_id, month_year)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {REVIEWS_TABLE} (
        user_id TEXT NOT NULL,
        week_start TEXT NOT NULL,
        achievements TEXT,
        lessons TEXT,
        reflections TEXT,
        next_focus TEXT,
        top_outcomes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        PRIMARY KEY (user_id, week_start)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {WINS_TABLE} (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        circle_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        source TEXT NOT NULL DEFAULT 'manual',
        task_id TEXT,
        goal_id TEXT,
        milestone_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

INDEX_DDL = [
    f"CREATE INDEX IF NOT EXISTS idx_{CIRCLE_MEMBERS_TABLE}_user ON {CIRCLE_MEMBERS_TABLE} (user_id, joined_at)",
    f"CREATE INDEX IF NOT EXISTS idx_{GOALS_TABLE}_user ON {GOALS_TABLE} (user_id, circle_id, created_at)",
    f"CREATE INDEX IF NOT EXISTS idx_{MILESTONES_TABLE}_goal ON {MILESTONES_TABLE} (goal_id, created_at)",
    f"CREATE INDEX IF NOT EXISTS idx_{HABITS_TABLE}_user_month ON {HABITS_TABLE} (user_id, month_year)",
    f"CREATE INDEX IF NOT EXISTS idx_{TASKS_TABLE}_user_type_date ON {TASKS_TABLE} (user_id, type, date)",
    f"CREATE UNIQUE INDEX IF NOT EXISTS ux_{TASKS_TABLE}_priority_day "
    f"ON {TASKS_TABLE} (user_id, date) WHERE type = 'priority'",
    f"CREATE INDEX IF NOT EXISTS idx_{WINS_TABLE}_user_created ON {WINS_TABLE} (user_id, created_at)",
    f"CREATE INDEX IF NOT EXISTS idx_{WINS_TABLE}_task ON {WINS_TABLE} (task_id)",
    f"CREATE INDEX IF NOT EXISTS idx_{WINS_TABLE}_milestone ON {WINS_TABLE} (milestone_id)",
]


async def init_db(db: Database) -> None:
    engine = db.engine
    async with engine.begin() as conn:
        for ddl in TABLE_DDL:
            await conn.execute(sql_text(ddl))

    async def ensure_index(index_sql: str) -> None:
        try:
            async with engine.begin() as conn:
                await conn.execute(sql_text(index_sql))
        except DBAPIError as exc:
            logger.warning("Skipping index creation: %s", exc)

    for index_sql in INDEX_DDL:
        await ensure_index(index_sql)
