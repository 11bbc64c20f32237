"""Plan catalog.

-1 means unlimited for every numeric limit.
"""

from __future__ import annotations

from pydantic import BaseModel


class PlanLimits(BaseModel):
    projects: int
    automation_suggestions_per_day: int
    automation_playbooks: bool


class Plan(BaseModel):
    id: str
    name: str
    price: int  # monthly price in cents
    limits: PlanLimits


FREE_PLAN_ID = "free"

PLANS: list[Plan] = [
    Plan(
        id=FREE_PLAN_ID,
        name="Free",
        price=0,
        limits=PlanLimits(projects=1, automation_suggestions_per_day=5, automation_playbooks=False),
    ),
    Plan(
        id="pro",
        name="Pro",
        price=2900,
        limits=PlanLimits(projects=5, automation_suggestions_per_day=25, automation_playbooks=True),
    ),
    Plan(
        id="business",
        name="Business",
        price=9900,
        limits=PlanLimits(projects=-1, automation_suggestions_per_day=-1, automation_playbooks=True),
    ),
]


def get_plan_by_id(plan_id: str) -> Plan | None:
    return next((p for p in PLANS if p.id == plan_id), None)
