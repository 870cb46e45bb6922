from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class TaskType(str, Enum):
    TASK = "task"
    EVENT = "event"
    PRIORITY = "priority"
    WEEK = "week"


TaskPriority = Literal["low", "medium", "high"]
TaskStatus = Literal["planned", "in_progress", "done"]
GoalHorizon = Literal["long-term", "medium-term", "short-term"]
RoutineType = Literal["morning", "evening"]
CircleRole = Literal["owner", "member"]


class _TaskBase(BaseModel):
    id: str
    user_id: str
    circle_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    priority: TaskPriority = "medium"
    status: TaskStatus = "planned"
    linked_goal_id: Optional[str] = None
    linked_milestone_id: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _legacy_status(cls, value):
        if value in (None, "", "open"):
            return "planned"
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value):
        if value in ("low", "medium", "high"):
            return value
        return "medium"

    @property
    def is_done(self) -> bool:
        return self.status == "done"


class TodoTask(_TaskBase):
    type: Literal["task"] = "task"


class CalendarEvent(_TaskBase):
    type: Literal["event"] = "event"


class DailyPriority(_TaskBase):
    type: Literal["priority"] = "priority"


class WeekItem(_TaskBase):
    type: Literal["week"] = "week"


TaskRecord = Annotated[
    Union[TodoTask, CalendarEvent, DailyPriority, WeekItem],
    Field(discriminator="type"),
]
TASK_RECORD_ADAPTER: TypeAdapter = TypeAdapter(TaskRecord)


class GoalCreate(BaseModel):
    title: str
    description: Optional[str] = None
    horizon: GoalHorizon = "long-term"
    deadline: Optional[dt.date] = None
    why: Optional[str] = None
    action_plan: Optional[str] = None
    strategy_notes: Optional[str] = None


class GoalPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    horizon: Optional[GoalHorizon] = None
    deadline: Optional[dt.date] = None
    why: Optional[str] = None
    action_plan: Optional[str] = None
    strategy_notes: Optional[str] = None


class MilestoneCreate(BaseModel):
    title: str
    description: Optional[str] = None
    due_week: Optional[dt.date] = None


class MilestonePatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_week: Optional[dt.date] = None


class CompletionPayload(BaseModel):
    completed: bool


class HabitCreate(BaseModel):
    name: str
    month_year: str


class HabitRename(BaseModel):
    name: str


class RoutineStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    text: str
    duration_minutes: Optional[int] = Field(default=None, alias="durationMinutes", ge=0)
    completed_dates: List[str] = Field(default_factory=list, alias="completedDates")


class RoutineStepsPayload(BaseModel):
    steps: List[RoutineStep]


class StepMovePayload(BaseModel):
    direction: Literal["up", "down"]


class StepCompletionPayload(BaseModel):
    completed: bool
    date: Optional[dt.date] = None


class TitlePayload(BaseModel):
    title: str = ""


class DayNotesPatch(BaseModel):
    schedule: Optional[str] = None
    notes: Optional[str] = None


class EventCreate(BaseModel):
    title: str
    date: dt.date


class EventPatch(BaseModel):
    title: Optional[str] = None
    date: Optional[dt.date] = None


class WeekTaskCreate(BaseModel):
    title: str
    date: dt.date
    priority: TaskPriority = "medium"
    linked_goal_id: Optional[str] = None
    linked_milestone_id: Optional[str] = None
    notes: Optional[str] = None


class WeekTaskPatch(BaseModel):
    title: Optional[str] = None
    date: Optional[dt.date] = None
    priority: Optional[TaskPriority] = None
    linked_goal_id: Optional[str] = None
    linked_milestone_id: Optional[str] = None
    notes: Optional[str] = None


class StatusPayload(BaseModel):
    status: Literal["planned", "in_progress", "done", "open"]


class ReviewPayload(BaseModel):
    achievements: str = ""
    lessons: str = ""
    reflections: str = ""
    next_focus: str = ""
    top_outcomes: str = ""


class MonthGoalsPayload(BaseModel):
    goals: str = ""


class MonthReviewPayload(BaseModel):
    review: str = ""


class WinCreate(BaseModel):
    title: str
    description: Optional[str] = None
    goal_id: Optional[str] = None
    milestone_id: Optional[str] = None


class InviteCreate(BaseModel):
    role: CircleRole = "member"
    ttl_hours: Optional[int] = Field(default=None, gt=0, le=24 * 30)


class InviteAccept(BaseModel):
    token: str


class ProfilePayload(BaseModel):
    display_name: str


class MonthGridResponse(BaseModel):
    month: str
    start_date: str
    end_date: str
    prev_month: str
    next_month: str
    cells: List[Dict[str, Any]]


class WeekPeriodResponse(BaseModel):
    week_start: str
    week_end: str
    prev_week: str
    next_week: str
    dates: List[str]
