"""Test doubles and seeding helpers shared by the test modules."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable

from playbook_engine.billing.quota import QuotaGate
from playbook_engine.database.models import (
    GovernancePolicy,
    Product,
    Project,
    ProjectIssue,
    ProjectMember,
    ShareLink,
    Subscription,
    User,
    new_id,
    utcnow,
)
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.schemas import FixOutcome, FixOutcomeKind, PlaybookId


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator doubles
# ─────────────────────────────────────────────────────────────────────────────

class FakeGenerator:
    """Deterministic suggestion generator; optionally fails after N calls."""

    def __init__(self, fail_after: int | None = None):
        self.fail_after = fail_after
        self.calls: list[str] = []

    async def suggest(self, product, playbook_id: PlaybookId) -> str | None:
        if self.fail_after is not None and len(self.calls) >= self.fail_after:
            raise RuntimeError("provider exploded")
        self.calls.append(product.id)
        return f"{product.title} | Shop Now"


def outcome(kind: FixOutcomeKind, **kwargs) -> FixOutcome:
    if kind == FixOutcomeKind.UPDATED:
        kwargs.setdefault("field", "seo_title")
    return FixOutcome(kind=kind, **kwargs)


class ScriptedFixer:
    """Returns scripted outcomes per product; UPDATED for anything unscripted.

    A script entry may be a single outcome, an exception to raise, or a list
    consumed one call at a time (the last entry repeats).
    """

    def __init__(
        self,
        script: dict | None = None,
        on_fix: Callable[[str, str], Awaitable[None]] | None = None,
    ):
        self.script = {k: (list(v) if isinstance(v, list) else [v]) for k, v in (script or {}).items()}
        self.on_fix = on_fix
        self.calls: list[str] = []
        self.prepared = False
        self.draft_id: str | None = None

    async def prepare(self, project_id, playbook_id, scope_id, rules_hash) -> None:
        self.prepared = True

    async def fix(self, user_id: str, product_id: str, issue_type: str) -> FixOutcome:
        self.calls.append(product_id)
        steps = self.script.get(product_id)
        step = (steps.pop(0) if len(steps) > 1 else steps[0]) if steps else outcome(FixOutcomeKind.UPDATED)
        if isinstance(step, Exception):
            raise step
        if self.on_fix:
            await self.on_fix(user_id, product_id)
        return step


# ─────────────────────────────────────────────────────────────────────────────
# Seeding
# ─────────────────────────────────────────────────────────────────────────────

class Seeder:
    def __init__(self, sessions: SessionFactory):
        self.sessions = sessions
        self.base_time = utcnow() - timedelta(hours=1)
        self._product_count = 0

    async def user(self, plan: str = "pro", account_role: str | None = None) -> User:
        user = User(email=f"{new_id()}@example.com", account_role=account_role)
        async with get_session(self.sessions) as db:
            db.add(user)
            if plan != "free":
                db.add(Subscription(user_id=user.id, plan=plan, status="active"))
        return user

    async def project(self, owner: User, created_at: datetime | None = None) -> Project:
        project = Project(name="Test Store", user_id=owner.id, created_at=created_at or self.base_time)
        async with get_session(self.sessions) as db:
            db.add(project)
        return project

    async def member(self, project: Project, user: User, role: str) -> None:
        async with get_session(self.sessions) as db:
            db.add(ProjectMember(project_id=project.id, user_id=user.id, role=role))

    async def products(
        self,
        project: Project,
        count: int,
        seo_title: str | None = None,
        seo_description: str | None = None,
    ) -> list[Product]:
        """Products in scope order (most recently synced first)."""
        async with get_session(self.sessions) as db:
            existing = self._product_count
            products = []
            for i in range(count):
                product = Product(
                    project_id=project.id,
                    external_id=f"gid://shopify/Product/{existing + i}",
                    title=f"Product {existing + i}",
                    description="A fine product",
                    seo_title=seo_title,
                    seo_description=seo_description,
                    last_synced_at=self.base_time - timedelta(minutes=existing + i),
                )
                db.add(product)
                products.append(product)
        self._product_count += count
        return products

    async def set_field(self, product_id: str, field: str, value: str | None) -> None:
        async with get_session(self.sessions) as db:
            product = await db.get(Product, product_id)
            setattr(product, field, value)

    async def get_product(self, product_id: str) -> Product:
        async with get_session(self.sessions) as db:
            return await db.get(Product, product_id)

    async def usage(self, user: User, project: Project, count: int) -> None:
        await QuotaGate(self.sessions).record_ai_usage(user.id, project.id, count)

    async def require_approval(self, project: Project) -> None:
        async with get_session(self.sessions) as db:
            db.add(GovernancePolicy(project_id=project.id, require_approval_for_apply=True))

    async def issue(self, project: Project, severity: str = "warning", **fields) -> ProjectIssue:
        issue = ProjectIssue(project_id=project.id, title=fields.pop("title", "Issue"), severity=severity, **fields)
        async with get_session(self.sessions) as db:
            db.add(issue)
        return issue

    async def share_link(self, project: Project, status: str = "ACTIVE") -> ShareLink:
        link = ShareLink(project_id=project.id, status=status, created_at=self.base_time)
        async with get_session(self.sessions) as db:
            db.add(link)
        return link
