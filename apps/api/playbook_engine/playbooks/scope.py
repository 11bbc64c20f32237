"""Scope Resolver.

A playbook's scope is the live set of products its predicate selects. It is
never stored: callers receive a fingerprint (``scopeId``) and must echo it
back, so a decision made against one catalog state cannot be applied to
another.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from sqlalchemy import or_
from sqlmodel import select

from playbook_engine.database.models import Product
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import ValidationError
from playbook_engine.schemas import PlaybookId


# Product field each playbook fills in
PLAYBOOK_FIELDS: dict[PlaybookId, str] = {
    PlaybookId.MISSING_SEO_TITLE: "seo_title",
    PlaybookId.MISSING_SEO_DESCRIPTION: "seo_description",
}

PLAYBOOK_LABELS: dict[PlaybookId, str] = {
    PlaybookId.MISSING_SEO_TITLE: "Fix missing SEO titles",
    PlaybookId.MISSING_SEO_DESCRIPTION: "Fix missing SEO descriptions",
}


def parse_playbook_id(value: str | PlaybookId | None) -> PlaybookId:
    if not value:
        raise ValidationError("playbookId is required")
    try:
        return PlaybookId(value)
    except ValueError:
        raise ValidationError(f"Unknown playbookId: {value}") from None


def compute_scope_id(project_id: str, playbook_id: PlaybookId, product_ids: list[str]) -> str:
    """Deterministic fingerprint of a product set (order independent)."""
    payload = f"{project_id}:{playbook_id.value}:{','.join(sorted(product_ids))}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class ResolvedScope:
    project_id: str
    playbook_id: PlaybookId
    product_ids: list[str]
    scope_id: str

    @property
    def count(self) -> int:
        return len(self.product_ids)


class ScopeResolver:
    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    @staticmethod
    def eligible(playbook_id: PlaybookId):
        """SQL predicate: the playbook's field is missing."""
        column = getattr(Product, PLAYBOOK_FIELDS[playbook_id])
        return or_(column.is_(None), column == "")

    async def affected_product_ids(self, project_id: str, playbook_id: PlaybookId) -> list[str]:
        """Eligible products, most recently synced first."""
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(Product.id)
                .where(Product.project_id == project_id)
                .where(self.eligible(playbook_id))
                .order_by(Product.last_synced_at.desc(), Product.id)
            )
            return list(result.scalars().all())

    async def resolve(self, project_id: str, playbook_id: PlaybookId) -> ResolvedScope:
        product_ids = await self.affected_product_ids(project_id, playbook_id)
        return ResolvedScope(
            project_id=project_id,
            playbook_id=playbook_id,
            product_ids=product_ids,
            scope_id=compute_scope_id(project_id, playbook_id, product_ids),
        )

    async def preview_titles(self, project_id: str, playbook_id: PlaybookId, limit: int = 6) -> list[str]:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(Product.title)
                .where(Product.project_id == project_id)
                .where(self.eligible(playbook_id))
                .order_by(Product.last_synced_at.desc(), Product.id)
                .limit(limit)
            )
            return list(result.scalars().all())
