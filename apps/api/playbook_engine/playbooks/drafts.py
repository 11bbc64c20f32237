"""Preview and draft generation.

Drafts hold generated-but-not-applied field values for one playbook scope,
keyed by (project, playbook, scopeId, rulesHash). A preview fills a small
sample (PARTIAL); a full draft fills every product in scope (READY).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlmodel import select

from playbook_engine.billing.quota import QuotaGate
from playbook_engine.config import Settings, get_settings
from playbook_engine.database.models import PlaybookDraft, PlaybookRun, Product, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import QuotaExceededError, RulesChangedError, ScopeConflictError, ValidationError
from playbook_engine.playbooks.fixers import draft_is_expired
from playbook_engine.playbooks.generation import SuggestionGenerator
from playbook_engine.playbooks.scope import PLAYBOOK_FIELDS, ResolvedScope, ScopeResolver
from playbook_engine.schemas import DraftStatus, PlaybookId, PlaybookRules


logger = logging.getLogger(__name__)


class DraftService:
    """Generates, stores and looks up playbook drafts."""

    def __init__(
        self,
        sessions: SessionFactory,
        scopes: ScopeResolver,
        quota: QuotaGate,
        generator: SuggestionGenerator,
        settings: Settings | None = None,
    ):
        self._sessions = sessions
        self.scopes = scopes
        self.quota = quota
        self.generator = generator
        self.settings = settings or get_settings()

    # =========================================================================
    # Lookup
    # =========================================================================

    async def get_latest_draft(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str | None = None,
        persist_expiry: bool = True,
    ) -> PlaybookDraft | None:
        """Most recent draft for the playbook (optionally one scope).

        A draft past ``expires_at`` is marked EXPIRED on read unless
        ``persist_expiry`` is False.
        """
        async with get_session(self._sessions) as db:
            query = (
                select(PlaybookDraft)
                .where(PlaybookDraft.project_id == project_id)
                .where(PlaybookDraft.playbook_id == playbook_id.value)
            )
            if scope_id:
                query = query.where(PlaybookDraft.scope_id == scope_id)
            result = await db.execute(query.order_by(PlaybookDraft.created_at.desc()).limit(1))
            draft = result.scalar_one_or_none()

            if (
                persist_expiry
                and draft
                and draft.status != DraftStatus.EXPIRED.value
                and draft_is_expired(draft)
            ):
                draft.status = DraftStatus.EXPIRED.value
                draft.updated_at = utcnow()
                logger.info(f"Draft {draft.id} expired")

        return draft

    async def _find_live_draft(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str,
        rules_hash: str,
    ) -> PlaybookDraft | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookDraft)
                .where(PlaybookDraft.project_id == project_id)
                .where(PlaybookDraft.playbook_id == playbook_id.value)
                .where(PlaybookDraft.scope_id == scope_id)
                .where(PlaybookDraft.rules_hash == rules_hash)
                .where(PlaybookDraft.status.in_([DraftStatus.PARTIAL.value, DraftStatus.READY.value]))
                .order_by(PlaybookDraft.created_at.desc())
                .limit(1)
            )
            draft = result.scalar_one_or_none()

        if draft and draft_is_expired(draft):
            return None
        return draft

    # =========================================================================
    # Preview
    # =========================================================================

    async def generate_preview(self, run: PlaybookRun) -> PlaybookDraft:
        """Generate suggestions for the first few products in scope."""
        playbook_id = PlaybookId(run.playbook_id)
        meta = run.meta or {}
        rules = PlaybookRules.model_validate(meta.get("rules") or {})
        sample_size = meta.get("sampleSize") or self.settings.preview_sample_size

        scope = await self._validated_scope(run, playbook_id, required=False)
        rules_hash = self._validated_rules_hash(run, rules)

        allowance = await self.quota.daily_allowance(run.created_by_user_id, run.project_id)
        if not allowance.unlimited:
            if allowance.remaining <= 0:
                raise QuotaExceededError(
                    "Daily AI suggestion limit reached. Try again tomorrow or upgrade your plan.",
                    limit=allowance.limit,
                    used=allowance.used,
                )
            sample_size = min(sample_size, allowance.remaining)

        sample_ids = scope.product_ids[:sample_size]
        items = await self._generate_items(sample_ids, playbook_id, rules)

        draft = await self._find_live_draft(run.project_id, playbook_id, scope.scope_id, rules_hash)
        if draft:
            draft.items = _merge_items(draft.items, items)
            draft.draft_generated = len(draft.items)
            draft.affected_total = scope.count
            draft.updated_at = utcnow()
        else:
            draft = self._new_draft(run, scope, rules, rules_hash)
            draft.items = items
            draft.draft_generated = len(items)

        draft = await self._save(draft)
        await self.quota.record_ai_usage(
            run.created_by_user_id, run.project_id, len(items), run_id=run.id
        )
        logger.info(f"Preview for run {run.id}: {len(items)}/{len(sample_ids)} suggestions in draft {draft.id}")
        return draft

    # =========================================================================
    # Full draft
    # =========================================================================

    async def generate_draft(self, run: PlaybookRun) -> PlaybookDraft:
        """Fill in a suggestion for every product in scope."""
        playbook_id = PlaybookId(run.playbook_id)
        scope = await self._validated_scope(run, playbook_id, required=True)
        rules = await self._draft_rules(run, playbook_id, scope.scope_id)
        rules_hash = self._validated_rules_hash(run, rules)

        draft = await self._find_live_draft(run.project_id, playbook_id, scope.scope_id, rules_hash)
        if not draft:
            draft = self._new_draft(run, scope, rules, rules_hash)

        covered = {item["productId"] for item in (draft.items or [])}
        missing = [pid for pid in scope.product_ids if pid not in covered]

        allowance = await self.quota.daily_allowance(run.created_by_user_id, run.project_id)
        if not allowance.unlimited and allowance.remaining < len(missing):
            raise QuotaExceededError(
                "Not enough daily AI suggestions left to generate the full draft.",
                required=len(missing),
                remaining=allowance.remaining,
            )

        generated: list[dict[str, Any]] = []
        try:
            for product in await self._load_products(missing):
                item = await self._suggest(product, playbook_id, rules)
                if item:
                    generated.append(item)
        except Exception:
            draft.items = _merge_items(draft.items, generated)
            draft.draft_generated = len(draft.items)
            draft.status = DraftStatus.FAILED.value
            draft.updated_at = utcnow()
            await self._save(draft)
            await self.quota.record_ai_usage(
                run.created_by_user_id, run.project_id, len(generated), run_id=run.id
            )
            logger.error(f"Draft generation failed for run {run.id} after {len(generated)} suggestion(s)")
            raise

        draft.items = _merge_items(draft.items, generated)
        draft.draft_generated = len(draft.items)
        draft.affected_total = scope.count
        draft.status = DraftStatus.READY.value
        draft.updated_at = utcnow()
        draft = await self._save(draft)

        await self.quota.record_ai_usage(
            run.created_by_user_id, run.project_id, len(generated), run_id=run.id
        )
        logger.info(
            f"Draft {draft.id} ready for run {run.id}: "
            f"{draft.draft_generated}/{draft.affected_total} products covered"
        )
        return draft

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _validated_scope(self, run: PlaybookRun, playbook_id: PlaybookId, required: bool) -> ResolvedScope:
        if required and not run.scope_id:
            raise ValidationError("scopeId is required for draft generation")
        scope = await self.scopes.resolve(run.project_id, playbook_id)
        if run.scope_id and run.scope_id != scope.scope_id:
            raise ScopeConflictError(scope.scope_id, run.scope_id)
        return scope

    @staticmethod
    def _validated_rules_hash(run: PlaybookRun, rules: PlaybookRules) -> str:
        rules_hash = rules.fingerprint()
        if run.rules_hash and run.rules_hash != rules_hash:
            raise RulesChangedError(
                "The playbook rules changed since the preview was generated.",
                expectedRulesHash=rules_hash,
                providedRulesHash=run.rules_hash,
            )
        return rules_hash

    async def _draft_rules(self, run: PlaybookRun, playbook_id: PlaybookId, scope_id: str) -> PlaybookRules:
        """Rules from the run, else from the scope's latest draft, else defaults."""
        meta = run.meta or {}
        if meta.get("rules"):
            return PlaybookRules.model_validate(meta["rules"])

        latest = await self.get_latest_draft(run.project_id, playbook_id, scope_id)
        if latest and latest.rules:
            return PlaybookRules.model_validate(latest.rules)
        return PlaybookRules()

    def _new_draft(
        self,
        run: PlaybookRun,
        scope: ResolvedScope,
        rules: PlaybookRules,
        rules_hash: str,
    ) -> PlaybookDraft:
        now = utcnow()
        return PlaybookDraft(
            project_id=run.project_id,
            playbook_id=run.playbook_id,
            scope_id=scope.scope_id,
            rules_hash=rules_hash,
            rules=rules.model_dump(mode="json"),
            status=DraftStatus.PARTIAL.value,
            affected_total=scope.count,
            items=[],
            created_by_user_id=run.created_by_user_id,
            expires_at=now + timedelta(hours=self.settings.draft_ttl_hours),
            created_at=now,
            updated_at=now,
        )

    async def _load_products(self, product_ids: list[str]) -> list[Product]:
        """Products in the given order."""
        if not product_ids:
            return []
        async with get_session(self._sessions) as db:
            result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
            by_id = {p.id: p for p in result.scalars().all()}
        return [by_id[pid] for pid in product_ids if pid in by_id]

    async def _generate_items(
        self,
        product_ids: list[str],
        playbook_id: PlaybookId,
        rules: PlaybookRules,
    ) -> list[dict[str, Any]]:
        items = []
        for product in await self._load_products(product_ids):
            item = await self._suggest(product, playbook_id, rules)
            if item:
                items.append(item)
        return items

    async def _suggest(
        self,
        product: Product,
        playbook_id: PlaybookId,
        rules: PlaybookRules,
    ) -> dict[str, Any] | None:
        suggestion = await self.generator.suggest(product, playbook_id)
        if not suggestion:
            return None
        value = rules.apply_to(suggestion)
        if not value:
            return None
        return {"productId": product.id, "field": PLAYBOOK_FIELDS[playbook_id], "value": value}

    async def _save(self, draft: PlaybookDraft) -> PlaybookDraft:
        async with get_session(self._sessions) as db:
            draft = await db.merge(draft)
        return draft


def _merge_items(existing: list[dict[str, Any]] | None, new: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge by productId; newer values win, first-seen order is kept."""
    merged = {item["productId"]: item for item in (existing or [])}
    for item in new:
        merged[item["productId"]] = item
    return list(merged.values())
