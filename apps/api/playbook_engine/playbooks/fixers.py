"""Per-product fix collaborators.

The apply loop talks to a ``ProductFixer``: ``prepare`` once per apply pass,
then ``fix`` per product. Every outcome is reported as a ``FixOutcome`` kind
decided here, at the collaborator boundary, so the loop never has to infer
failure types from exception shapes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

import httpx
from sqlmodel import select

from playbook_engine.config import Settings
from playbook_engine.database.models import PlaybookDraft, Product, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import DraftNotFoundError, RulesChangedError
from playbook_engine.playbooks.scope import PLAYBOOK_FIELDS
from playbook_engine.schemas import DraftStatus, FixOutcome, FixOutcomeKind, PlaybookId


logger = logging.getLogger(__name__)


class ProductFixer(Protocol):
    draft_id: str | None

    async def prepare(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str,
        rules_hash: str | None,
    ) -> None:
        ...

    async def fix(self, user_id: str, product_id: str, issue_type: str) -> FixOutcome:
        ...


def draft_is_expired(draft: PlaybookDraft, now: datetime | None = None) -> bool:
    if draft.status == DraftStatus.EXPIRED.value:
        return True
    return draft.expires_at is not None and draft.expires_at <= (now or utcnow())


# =============================================================================
# Draft-backed fixer (default)
# =============================================================================

class DraftFixer:
    """Writes pre-generated draft values into products. Makes no AI calls."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions
        self._values: dict[str, str] = {}
        self.draft_id: str | None = None

    async def prepare(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str,
        rules_hash: str | None,
    ) -> None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookDraft)
                .where(PlaybookDraft.project_id == project_id)
                .where(PlaybookDraft.playbook_id == playbook_id.value)
                .where(PlaybookDraft.scope_id == scope_id)
                .where(PlaybookDraft.status != DraftStatus.FAILED.value)
                .order_by(PlaybookDraft.created_at.desc())
                .limit(1)
            )
            draft = result.scalar_one_or_none()

            if not draft:
                raise DraftNotFoundError(
                    "No draft exists for this playbook scope. Generate a preview or draft first.",
                    scopeId=scope_id,
                )

            if draft_is_expired(draft):
                if draft.status != DraftStatus.EXPIRED.value:
                    draft.status = DraftStatus.EXPIRED.value
                    draft.updated_at = utcnow()
                raise DraftNotFoundError(
                    "The draft for this playbook scope has expired. Generate a new draft.",
                    scopeId=scope_id,
                    draftId=draft.id,
                )

        if rules_hash and draft.rules_hash != rules_hash:
            raise RulesChangedError(
                "The playbook rules changed since the draft was generated. Regenerate the draft.",
                expectedRulesHash=draft.rules_hash,
                providedRulesHash=rules_hash,
            )

        self.draft_id = draft.id
        self._values = {item["productId"]: item["value"] for item in (draft.items or []) if item.get("value")}

    async def fix(self, user_id: str, product_id: str, issue_type: str) -> FixOutcome:
        field = PLAYBOOK_FIELDS[PlaybookId(issue_type)]
        value = self._values.get(product_id)
        if not value:
            return FixOutcome(kind=FixOutcomeKind.SKIPPED, field=field, reason="no_suggestion")

        async with get_session(self._sessions) as db:
            product = await db.get(Product, product_id)
            if not product:
                return FixOutcome(kind=FixOutcomeKind.ERROR, field=field, message="Product no longer exists.")
            if getattr(product, field):
                return FixOutcome(kind=FixOutcomeKind.SKIPPED, field=field, reason="already_has_value")
            setattr(product, field, value)

        return FixOutcome(kind=FixOutcomeKind.UPDATED, field=field)


# =============================================================================
# Remote fix service
# =============================================================================

class HttpFixer:
    """Delegates each fix to a remote service that generates and writes the value."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        headers = {"Content-Type": "application/json"}
        if settings.fix_service_token:
            headers["Authorization"] = f"Bearer {settings.fix_service_token}"
        self._client = httpx.AsyncClient(
            base_url=settings.fix_service_url,
            headers=headers,
            timeout=60.0,
            transport=transport,
        )
        self.draft_id: str | None = None

    async def prepare(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str,
        rules_hash: str | None,
    ) -> None:
        return None

    async def fix(self, user_id: str, product_id: str, issue_type: str) -> FixOutcome:
        try:
            response = await self._client.post(
                "/fix",
                json={"userId": user_id, "productId": product_id, "issueType": issue_type},
            )
        except httpx.HTTPError as e:
            return FixOutcome(kind=FixOutcomeKind.ERROR, message=f"Fix service unreachable: {e}")

        if response.status_code == 429:
            code = _error_code(response)
            if code == "AI_DAILY_LIMIT_REACHED":
                return FixOutcome(kind=FixOutcomeKind.DAILY_LIMIT, reason=code)
            return FixOutcome(kind=FixOutcomeKind.RATE_LIMITED, reason=code or "rate_limited")

        if response.is_error:
            return FixOutcome(
                kind=FixOutcomeKind.ERROR,
                message=f"Fix service returned {response.status_code}",
            )

        data = response.json()
        if data.get("updated"):
            return FixOutcome(kind=FixOutcomeKind.UPDATED, field=data.get("field"))
        return FixOutcome(kind=FixOutcomeKind.SKIPPED, field=data.get("field"), reason=data.get("reason"))

    async def close(self) -> None:
        await self._client.aclose()


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None
