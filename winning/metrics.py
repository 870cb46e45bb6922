from __future__ import annotations

import math
from datetime import date, timedelta

from winning.periods import days_in_month, local_iso_date

WIN_CATEGORIES = ["Milestone", "Goal", "Task", "General"]


def habit_streak(checked_dates, today: date, max_days: int = 365) -> int:
    """Consecutive checked days ending today; zero when today is unchecked."""
    checked = set(checked_dates or [])
    count = 0
    current = today
    while count < max_days:
        if local_iso_date(current) not in checked:
            break
        count += 1
        current -= timedelta(days=1)
    return count


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def completion_percent(checked_dates, year_month: str) -> int:
    total = days_in_month(year_month)
    completed = len({d for d in (checked_dates or []) if str(d).startswith(year_month)})
    return round_half_up(completed * 100 / total)


def habit_summary(habit: dict, today: date) -> dict:
    checked = [check["date"] for check in habit.get("checks", []) if int(check.get("completed") or 0) == 1]
    payload = dict(habit)
    payload["streak"] = habit_streak(checked, today)
    payload["completion_percent"] = completion_percent(checked, habit["month_year"])
    return payload


def habit_averages(summaries: list[dict]) -> dict:
    """Average streak and completion across one member's habit summaries."""
    if not summaries:
        return {"habit_count": 0, "avg_streak": 0, "avg_completion_percent": 0}
    count = len(summaries)
    return {
        "habit_count": count,
        "avg_streak": round_half_up(sum(item["streak"] for item in summaries) / count),
        "avg_completion_percent": round_half_up(sum(item["completion_percent"] for item in summaries) / count),
    }


def win_category(win: dict) -> str:
    if win.get("milestone_id"):
        return "Milestone"
    if win.get("goal_id"):
        return "Goal"
    if win.get("task_id"):
        return "Task"
    return "General"


def win_totals(wins: list[dict]) -> dict:
    totals = {"total": len(wins)}
    totals.update({category: 0 for category in WIN_CATEGORIES})
    for win in wins:
        totals[win.get("category") or win_category(win)] += 1
    return totals


def display_name(user_id: str, viewer_id: str | None, profile_name: str | None = None) -> str:
    if user_id == viewer_id:
        return "You"
    clean = (profile_name or "").strip()
    if clean:
        return clean
    return f"Member {user_id[:8]}"
