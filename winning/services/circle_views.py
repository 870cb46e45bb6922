from __future__ import annotations

import logging
from datetime import date

from fastapi.encoders import jsonable_encoder

from winning import repositories
from winning.db import Database
from winning.metrics import WIN_CATEGORIES, display_name, habit_averages, habit_summary, win_totals
from winning.periods import (
    build_month_grid,
    get_week_start_local,
    month_date_range,
    parse_iso_date,
    parse_year_month,
    shift_week,
    week_dates,
    week_end,
)

logger = logging.getLogger(__name__)

WIN_OWNER_FILTERS = {"all", "mine", "others"}


async def load_members(db: Database, circle_id: str, viewer_id: str) -> list[dict]:
    """Check the viewer belongs to the circle and return its members with display names."""
    await repositories.require_membership(db, circle_id, viewer_id)
    members = await repositories.list_circle_members(db, circle_id)
    names = await repositories.list_display_names(db, [member["user_id"] for member in members])
    return [
        {
            "user_id": member["user_id"],
            "role": member["role"],
            "joined_at": member["joined_at"],
            "display_name": display_name(member["user_id"], viewer_id, names.get(member["user_id"])),
            "is_viewer": member["user_id"] == viewer_id,
        }
        for member in members
    ]


def _member_ids(members: list[dict]) -> list[str]:
    return [member["user_id"] for member in members]


def _group_by_user(rows, members: list[dict], key: str = "items") -> list[dict]:
    grouped: dict[str, list] = {member["user_id"]: [] for member in members}
    for row in rows:
        owner = row["user_id"] if isinstance(row, dict) else row.user_id
        if owner in grouped:
            grouped[owner].append(row)
    return [{**member, key: jsonable_encoder(grouped[member["user_id"]])} for member in members]


async def habits_view(db: Database, circle_id: str, viewer_id: str, month_year: str, today: date) -> dict:
    parse_year_month(month_year)
    members = await load_members(db, circle_id, viewer_id)
    habits = await repositories.list_habits(db, _member_ids(members), month_year)
    summaries = [habit_summary(habit, today) for habit in habits]
    grouped = _group_by_user(summaries, members, "habits")
    return {
        "circle_id": circle_id,
        "month": month_year,
        "members": [{**member, **habit_averages(member["habits"])} for member in grouped],
    }


async def goals_view(db: Database, circle_id: str, viewer_id: str) -> dict:
    members = await load_members(db, circle_id, viewer_id)
    goals = await repositories.list_goals(db, _member_ids(members))
    return {"circle_id": circle_id, "members": _group_by_user(goals, members, "goals")}


async def routines_view(db: Database, circle_id: str, viewer_id: str, today: date) -> dict:
    members = await load_members(db, circle_id, viewer_id)
    routines = await repositories.list_routines(db, _member_ids(members))
    today_iso = today.isoformat()
    by_user: dict[str, dict] = {member["user_id"]: {} for member in members}
    for routine in routines:
        steps = [
            {**step, "completed_today": today_iso in (step.get("completedDates") or [])}
            for step in routine["steps"]
        ]
        by_user.setdefault(routine["user_id"], {})[routine["type"]] = {**routine, "steps": steps}
    payload = []
    for member in members:
        routines_for_member = by_user[member["user_id"]]
        payload.append(
            {
                **member,
                "routines": {
                    routine_type: routines_for_member.get(routine_type, {"type": routine_type, "steps": []})
                    for routine_type in repositories.ROUTINE_TYPES
                },
            }
        )
    return {"circle_id": circle_id, "today": today_iso, "members": payload}


async def wins_view(
    db: Database,
    circle_id: str,
    viewer_id: str,
    owner: str = "all",
    category: str | None = None,
) -> dict:
    if owner not in WIN_OWNER_FILTERS:
        raise ValueError(f"Invalid owner filter: {owner}")
    if category and category not in WIN_CATEGORIES:
        raise ValueError(f"Invalid category: {category}")
    members = await load_members(db, circle_id, viewer_id)
    wins = await repositories.list_wins(db, _member_ids(members))
    names = {member["user_id"]: member["display_name"] for member in members}
    if owner == "mine":
        wins = [win for win in wins if win["user_id"] == viewer_id]
    elif owner == "others":
        wins = [win for win in wins if win["user_id"] != viewer_id]
    totals = win_totals(wins)
    if category:
        wins = [win for win in wins if win["category"] == category]
    items = [{**win, "owner_name": names.get(win["user_id"])} for win in wins]
    return {
        "circle_id": circle_id,
        "owner": owner,
        "category": category,
        "totals": totals,
        "items": jsonable_encoder(items),
        "members": members,
    }


async def calendar_view(
    db: Database,
    circle_id: str,
    viewer_id: str,
    month_year: str,
    today: date,
    first_weekday: int,
) -> dict:
    start_iso, end_iso = month_date_range(month_year)
    members = await load_members(db, circle_id, viewer_id)
    events = await repositories.list_tasks(db, _member_ids(members), ["event"], start_iso, end_iso)
    names = {member["user_id"]: member["display_name"] for member in members}
    by_day: dict[str, list[dict]] = {}
    for event in events:
        by_day.setdefault(event.date, []).append(
            {"id": event.id, "title": event.title, "user_id": event.user_id, "owner_name": names.get(event.user_id)}
        )
    cells = []
    for cell in build_month_grid(month_year, today=today, first_weekday=first_weekday):
        payload = cell.to_dict()
        payload["events"] = by_day.get(cell.date_iso, []) if cell.in_month else []
        cells.append(payload)
    return {
        "circle_id": circle_id,
        "month": month_year,
        "start_date": start_iso,
        "end_date": end_iso,
        "cells": cells,
        "members": _group_by_user(events, members, "events"),
    }


async def daily_view(db: Database, circle_id: str, viewer_id: str, day_iso: str) -> dict:
    parse_iso_date(day_iso)
    members = await load_members(db, circle_id, viewer_id)
    user_ids = _member_ids(members)
    tasks = await repositories.list_tasks(db, user_ids, ["task", "priority"], day_iso)
    notes = await repositories.list_day_notes(db, user_ids, day_iso)
    payload = []
    for member in members:
        mine = [task for task in tasks if task.user_id == member["user_id"]]
        priority = next((task for task in mine if task.type == "priority"), None)
        note = notes.get(member["user_id"]) or {}
        payload.append(
            {
                **member,
                "priority": jsonable_encoder(priority),
                "todos": jsonable_encoder([task for task in mine if task.type == "task"]),
                "schedule": note.get("schedule") or "",
                "notes": note.get("notes") or "",
            }
        )
    return {"circle_id": circle_id, "date": day_iso, "members": payload}


async def weekly_view(db: Database, circle_id: str, viewer_id: str, week_start: str) -> dict:
    week_key = get_week_start_local(parse_iso_date(week_start))
    members = await load_members(db, circle_id, viewer_id)
    user_ids = _member_ids(members)
    tasks = await repositories.list_tasks(db, user_ids, ["week"], week_key, week_end(week_key))
    reviews = await repositories.list_reviews(db, user_ids, [week_key])
    reviews_by_user = {review["user_id"]: review for review in reviews}
    payload = []
    for member in members:
        review = reviews_by_user.get(member["user_id"])
        payload.append(
            {
                **member,
                "tasks": jsonable_encoder([task for task in tasks if task.user_id == member["user_id"]]),
                "review": review,
            }
        )
    return {
        "circle_id": circle_id,
        "week_start": week_key,
        "week_end": week_end(week_key),
        "dates": week_dates(week_key),
        "prev_week": shift_week(week_key, -1),
        "next_week": shift_week(week_key, 1),
        "members": payload,
    }
