"""Automation playbooks service.

Entry points used by the HTTP layer and the run processor: estimate, apply,
run triggering and lookups.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from playbook_engine.access.roles import RoleResolver
from playbook_engine.approvals.governance import GovernanceService
from playbook_engine.approvals.service import ApprovalService, playbook_resource_id
from playbook_engine.billing.quota import QuotaGate
from playbook_engine.config import Settings, get_settings
from playbook_engine.database.models import PlaybookDraft, PlaybookRun, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import ApprovalRequiredError, NotFoundError, ValidationError
from playbook_engine.playbooks.apply import ApplyExecutor
from playbook_engine.playbooks.drafts import DraftService
from playbook_engine.playbooks.fixers import ProductFixer
from playbook_engine.playbooks.scope import ScopeResolver, parse_playbook_id
from playbook_engine.schemas import (
    AiDailyLimit,
    ApprovalResourceType,
    ApprovalStatus,
    PlaybookApplyResult,
    PlaybookEstimate,
    PlaybookId,
    RunResponse,
    RunListResponse,
    RunType,
    TriggerRunRequest,
)


logger = logging.getLogger(__name__)

# Run types that generate content (and need can_generate_drafts)
GENERATION_RUN_TYPES = frozenset({RunType.PREVIEW_GENERATE, RunType.DRAFT_GENERATE})


def run_to_response(run: PlaybookRun) -> RunResponse:
    return RunResponse.model_validate(run, from_attributes=True)


class AutomationPlaybooksService:
    def __init__(
        self,
        sessions: SessionFactory,
        roles: RoleResolver,
        scopes: ScopeResolver,
        quota: QuotaGate,
        drafts: DraftService,
        approvals: ApprovalService,
        governance: GovernanceService,
        fixer_factory: Callable[[], ProductFixer],
        settings: Settings | None = None,
    ):
        self._sessions = sessions
        self.roles = roles
        self.scopes = scopes
        self.quota = quota
        self.drafts = drafts
        self.approvals = approvals
        self.governance = governance
        self.fixer_factory = fixer_factory
        self.settings = settings or get_settings()
        self.executor = ApplyExecutor(scopes, quota, self.settings)

    # =========================================================================
    # Estimate
    # =========================================================================

    async def estimate(self, project_id: str, playbook_id: str | PlaybookId, user_id: str) -> PlaybookEstimate:
        """Preflight for a playbook. Read-only."""
        playbook = parse_playbook_id(playbook_id)
        await self.roles.assert_project_access(project_id, user_id)

        scope = await self.scopes.resolve(project_id, playbook)
        plan = await self.quota.get_plan(user_id)
        allowance = await self.quota.daily_allowance(user_id, project_id)

        tokens_per_call = self.settings.estimated_tokens_per_call
        estimated_tokens = scope.count * tokens_per_call

        reasons: list[str] = []
        plan_eligible = plan.limits.automation_playbooks
        if not plan_eligible:
            reasons.append("plan_not_eligible")
        if scope.count == 0:
            reasons.append("no_affected_products")

        token_capped = False
        if not allowance.unlimited:
            if allowance.remaining <= 0:
                reasons.append("ai_daily_limit_reached")
            elif estimated_tokens > allowance.remaining * tokens_per_call:
                token_capped = True
                reasons.append("token_cap_would_be_exceeded")

        eligible = (
            plan_eligible
            and scope.count > 0
            and (allowance.unlimited or allowance.remaining > 0)
            and not token_capped
        )

        return PlaybookEstimate(
            project_id=project_id,
            playbook_id=playbook,
            total_affected_products=scope.count,
            estimated_tokens=estimated_tokens,
            plan_id=plan.id,
            eligible=eligible,
            can_proceed=eligible and not reasons,
            reasons=reasons,
            ai_daily_limit=AiDailyLimit(
                limit=allowance.limit,
                used=allowance.used,
                remaining=allowance.remaining,
            ),
            scope_id=scope.scope_id,
        )

    # =========================================================================
    # Apply
    # =========================================================================

    async def apply_playbook(
        self,
        project_id: str,
        playbook_id: str | PlaybookId,
        user_id: str,
        scope_id: str | None,
        rules_hash: str | None = None,
    ) -> PlaybookApplyResult:
        """Apply a playbook against the scope the caller was issued.

        Refused before any product is touched when the caller lacks
        ``can_apply`` or the project requires an approval that does not exist.
        """
        playbook = parse_playbook_id(playbook_id)
        if not scope_id:
            raise ValidationError("scopeId is required")

        await self.roles.require(project_id, user_id, "can_apply", "You do not have permission to apply playbooks")
        project = await self.roles.get_project(project_id)

        approval_id = None
        if await self.governance.is_approval_required(project_id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY):
            resource_id = playbook_resource_id(playbook.value, scope_id)
            check = await self.approvals.has_valid_approval(
                project_id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, resource_id
            )
            if not check.valid:
                raise ApprovalRequiredError(
                    "This playbook apply requires an approved request",
                    resourceType=ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY.value,
                    resourceId=resource_id,
                    approvalStatus=check.status.value if check.status else None,
                )
            approval_id = check.approval_id
            # One apply per approval; released again if the pass raises
            if not await self.approvals.mark_consumed(approval_id):
                raise ApprovalRequiredError(
                    "The approval for this playbook apply was already used",
                    resourceType=ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY.value,
                    resourceId=resource_id,
                    approvalStatus=ApprovalStatus.APPROVED.value,
                )

        fixer = self.fixer_factory()
        try:
            result = await self.executor.run(
                project_id=project_id,
                owner_id=project.user_id,
                playbook_id=playbook,
                user_id=user_id,
                scope_id=scope_id,
                fixer=fixer,
                rules_hash=rules_hash,
            )
        except Exception:
            if approval_id:
                await self.approvals.release(approval_id)
            raise

        if result.updated > 0 and fixer.draft_id:
            await self._stamp_applied(fixer.draft_id, user_id)

        return result

    async def _stamp_applied(self, draft_id: str, user_id: str) -> None:
        async with get_session(self._sessions) as db:
            draft = await db.get(PlaybookDraft, draft_id)
            if draft:
                now = utcnow()
                draft.applied_at = now
                draft.applied_by_user_id = user_id
                draft.updated_at = now

    # =========================================================================
    # Runs
    # =========================================================================

    async def trigger_run(self, project_id: str, user_id: str, request: TriggerRunRequest) -> tuple[RunResponse, bool]:
        """Create a QUEUED run, or return the existing one for the idempotency key.

        Returns the run and whether it was newly created.
        """
        if request.run_type in (RunType.DRAFT_GENERATE, RunType.APPLY) and not request.scope_id:
            raise ValidationError(f"scopeId is required for {request.run_type.value} runs")

        if request.run_type in GENERATION_RUN_TYPES:
            await self.roles.require(
                project_id, user_id, "can_generate_drafts", "You do not have permission to generate drafts"
            )
        else:
            await self.roles.require(project_id, user_id, "can_apply", "You do not have permission to apply playbooks")

        existing = await self._run_by_idempotency_key(project_id, request.idempotency_key)
        if existing:
            logger.info(f"Run {existing.id} reused for idempotency key {request.idempotency_key}")
            return run_to_response(existing), False

        meta = {}
        if request.rules is not None:
            meta["rules"] = request.rules.model_dump(mode="json")
        if request.sample_size is not None:
            meta["sampleSize"] = request.sample_size

        run = PlaybookRun(
            project_id=project_id,
            created_by_user_id=user_id,
            playbook_id=request.playbook_id.value,
            scope_id=request.scope_id,
            rules_hash=request.rules_hash,
            idempotency_key=request.idempotency_key,
            run_type=request.run_type.value,
            meta=meta or None,
        )
        try:
            async with get_session(self._sessions) as db:
                db.add(run)
        except IntegrityError:
            existing = await self._run_by_idempotency_key(project_id, request.idempotency_key)
            if not existing:
                raise
            return run_to_response(existing), False

        logger.info(f"Run {run.id} queued: {run.run_type} {run.playbook_id} on project {project_id}")
        return run_to_response(run), True

    async def _run_by_idempotency_key(self, project_id: str, key: str) -> PlaybookRun | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookRun)
                .where(PlaybookRun.project_id == project_id)
                .where(PlaybookRun.idempotency_key == key)
            )
            return result.scalar_one_or_none()

    async def list_runs(
        self,
        project_id: str,
        user_id: str,
        playbook_id: str | None = None,
        limit: int = 50,
    ) -> RunListResponse:
        await self.roles.assert_project_access(project_id, user_id)
        filters = [PlaybookRun.project_id == project_id]
        if playbook_id:
            filters.append(PlaybookRun.playbook_id == parse_playbook_id(playbook_id).value)

        async with get_session(self._sessions) as db:
            total = int((await db.execute(
                select(func.count()).select_from(PlaybookRun).where(*filters)
            )).scalar_one())
            result = await db.execute(
                select(PlaybookRun)
                .where(*filters)
                .order_by(PlaybookRun.created_at.desc(), PlaybookRun.id)
                .limit(min(max(limit, 1), 200))
            )
            runs = list(result.scalars().all())

        return RunListResponse(runs=[run_to_response(r) for r in runs], total=total)

    async def get_run(self, project_id: str, run_id: str, user_id: str) -> RunResponse:
        await self.roles.assert_project_access(project_id, user_id)
        async with get_session(self._sessions) as db:
            run = await db.get(PlaybookRun, run_id)
        if not run or run.project_id != project_id:
            raise NotFoundError("Run not found")
        return run_to_response(run)

    async def get_latest_draft(self, project_id: str, playbook_id: str, user_id: str) -> PlaybookDraft:
        playbook = parse_playbook_id(playbook_id)
        await self.roles.assert_project_access(project_id, user_id)
        draft = await self.drafts.get_latest_draft(project_id, playbook)
        if not draft:
            raise NotFoundError("No draft exists for this playbook")
        return draft
