from __future__ import annotations

from datetime import date, datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, Field

from ..money import add
from .base import DBSerializableModel, IndexSpec


def month_key(moment: Optional[date] = None) -> str:
    moment = moment or datetime.utcnow()
    return f"{moment.year}-{moment.month:02d}"


class AssistantUsage(BaseModel):
    assistant_id: str
    assistant_name: str
    minutes_used: int = 0
    calls_made: int = 0
    cost: float = 0.0
    last_used_at: datetime = Field(default_factory=datetime.utcnow)


class DailyUsage(BaseModel):
    # Midnight UTC of the day; stored as datetime because BSON has no date type
    date: datetime
    minutes: int = 0
    calls: int = 0
    costs: float = 0.0


class UsageTracking(DBSerializableModel):
    """
    Monthly usage rollup for one user, broken down per assistant and per day.
    """

    collection_name: ClassVar[str] = "usage_tracking"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("month", 1)], {"unique": True}),
        ([("user_id", 1), ("year", 1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    month: str = Field(pattern=r"^\d{4}-\d{2}$", description="YYYY-MM")
    year: int = Field(ge=2020, le=2100)

    total_minutes_used: int = Field(default=0, ge=0)
    total_calls: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0)
    overage_cost: float = Field(default=0.0, ge=0)

    assistant_usage: List[AssistantUsage] = Field(default_factory=list)
    daily_usage: List[DailyUsage] = Field(default_factory=list)

    # Bumped on every write; stale replaces are rejected and retried
    version: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def for_month(cls, user_id: str, moment: Optional[datetime] = None) -> "UsageTracking":
        moment = moment or datetime.utcnow()
        return cls(user_id=user_id, month=month_key(moment), year=moment.year)

    def add_call_usage(
        self,
        assistant_id: str,
        assistant_name: str,
        minutes: int,
        cost: float,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.utcnow()

        self.total_minutes_used += minutes
        self.total_calls += 1
        self.total_cost = add(self.total_cost, cost)

        per_assistant = next(
            (u for u in self.assistant_usage if u.assistant_id == str(assistant_id)), None
        )
        if per_assistant is None:
            self.assistant_usage.append(
                AssistantUsage(
                    assistant_id=str(assistant_id),
                    assistant_name=assistant_name,
                    minutes_used=minutes,
                    calls_made=1,
                    cost=cost,
                    last_used_at=now,
                )
            )
        else:
            per_assistant.minutes_used += minutes
            per_assistant.calls_made += 1
            per_assistant.cost = add(per_assistant.cost, cost)
            per_assistant.assistant_name = assistant_name
            per_assistant.last_used_at = now

        today = datetime(now.year, now.month, now.day)
        daily = next((d for d in self.daily_usage if d.date == today), None)
        if daily is None:
            self.daily_usage.append(DailyUsage(date=today, minutes=minutes, calls=1, costs=cost))
        else:
            daily.minutes += minutes
            daily.calls += 1
            daily.costs = add(daily.costs, cost)

        self.updated_at = now

    def add_overage_cost(self, cost: float) -> None:
        self.overage_cost = add(self.overage_cost, cost)

    def get_top_assistants(self, limit: int = 5) -> List[AssistantUsage]:
        return sorted(self.assistant_usage, key=lambda u: u.minutes_used, reverse=True)[:limit]

    def get_daily_average(self) -> float:
        if not self.daily_usage:
            return 0.0
        return self.total_minutes_used / len(self.daily_usage)
