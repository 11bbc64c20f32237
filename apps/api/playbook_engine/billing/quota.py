"""Quota & Entitlement Gate.

Answers "which plan is this user on, how much AI budget does it allow today,
and how much is already used". The only writes are usage ledger rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, time

from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import select

from playbook_engine.billing.plans import FREE_PLAN_ID, PLANS, Plan, get_plan_by_id
from playbook_engine.database.models import AiUsageEvent, Subscription, TokenUsage, utcnow
from playbook_engine.database.session import SessionFactory, get_session


logger = logging.getLogger(__name__)

# Usage action counted against the daily suggestion allowance
PRODUCT_OPTIMIZE_ACTION = "product_optimize"

UNLIMITED = -1


class DailyAllowance(BaseModel):
    """Plan allowance and today's usage for one user on one project."""

    plan_id: str
    limit: int
    used: int

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int:
        if self.unlimited:
            return UNLIMITED
        return max(self.limit - self.used, 0)


def start_of_utc_day(now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return datetime.combine(now.date(), time.min)


def start_of_utc_month(now: datetime | None = None) -> datetime:
    return start_of_utc_day(now).replace(day=1)


class QuotaGate:
    """Plan, allowance and usage lookups for one store."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    async def get_user_plan(self, user_id: str) -> str:
        """Effective plan id; anything but an active known subscription is free."""
        async with get_session(self._sessions) as db:
            result = await db.execute(select(Subscription).where(Subscription.user_id == user_id))
            subscription = result.scalar_one_or_none()

        if not subscription or subscription.status != "active":
            return FREE_PLAN_ID

        plan = get_plan_by_id(subscription.plan)
        return plan.id if plan else FREE_PLAN_ID

    async def get_plan(self, user_id: str) -> Plan:
        return get_plan_by_id(await self.get_user_plan(user_id)) or PLANS[0]

    async def get_ai_suggestion_limit(self, user_id: str) -> tuple[str, int]:
        plan = await self.get_plan(user_id)
        return plan.id, plan.limits.automation_suggestions_per_day

    async def get_daily_ai_usage(
        self,
        user_id: str,
        project_id: str,
        action: str = PRODUCT_OPTIMIZE_ACTION,
    ) -> int:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(func.count())
                .select_from(AiUsageEvent)
                .where(AiUsageEvent.user_id == user_id)
                .where(AiUsageEvent.project_id == project_id)
                .where(AiUsageEvent.action == action)
                .where(AiUsageEvent.created_at >= start_of_utc_day())
            )
            return int(result.scalar_one())

    async def daily_allowance(
        self,
        user_id: str,
        project_id: str,
        action: str = PRODUCT_OPTIMIZE_ACTION,
    ) -> DailyAllowance:
        plan_id, limit = await self.get_ai_suggestion_limit(user_id)
        used = await self.get_daily_ai_usage(user_id, project_id, action)
        return DailyAllowance(plan_id=plan_id, limit=limit, used=used)

    async def record_ai_usage(
        self,
        user_id: str,
        project_id: str,
        count: int,
        action: str = PRODUCT_OPTIMIZE_ACTION,
        run_id: str | None = None,
    ) -> None:
        if count <= 0:
            return
        async with get_session(self._sessions) as db:
            for _ in range(count):
                db.add(AiUsageEvent(user_id=user_id, project_id=project_id, action=action, run_id=run_id))
        logger.info(f"Recorded {count} {action} usage event(s) for user {user_id} on project {project_id}")

    async def log_tokens(self, user_id: str, amount: int, source: str) -> None:
        if not user_id or not source or amount <= 0:
            return
        async with get_session(self._sessions) as db:
            db.add(TokenUsage(user_id=user_id, amount=amount, source=source))

    async def get_monthly_token_usage(self, user_id: str) -> int:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(func.coalesce(func.sum(TokenUsage.amount), 0))
                .where(TokenUsage.user_id == user_id)
                .where(TokenUsage.created_at >= start_of_utc_month())
            )
            return int(result.scalar_one())
