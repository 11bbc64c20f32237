"""Work Queue derivation.

A read-only projection of issues, playbook runs/drafts/approvals and share
links into one ranked list of ActionBundles. Nothing is persisted and nothing
is mutated; with the same inputs and the same ``now`` the output is identical.

Sort order:
1. State priority (PENDING_APPROVAL → APPROVED → DRAFTS_READY → PREVIEWED → FAILED/BLOCKED → NEW → APPLIED)
2. Health (CRITICAL → NEEDS_ATTENTION → HEALTHY)
3. Impact rank (lower first)
4. updatedAt (most recent first)
5. bundleId (stable tie-break)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlmodel import select

from playbook_engine.access.roles import RoleResolver
from playbook_engine.approvals.governance import GovernanceService
from playbook_engine.approvals.service import ApprovalService, playbook_resource_id
from playbook_engine.config import Settings, get_settings
from playbook_engine.database.models import PlaybookDraft, PlaybookRun, Product, Project, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.issues.source import IssueSource, ShareLinkReader, share_link_status
from playbook_engine.playbooks.drafts import DraftService
from playbook_engine.playbooks.fixers import draft_is_expired
from playbook_engine.playbooks.scope import PLAYBOOK_LABELS, ScopeResolver
from playbook_engine.schemas import (
    ActionBundle,
    ActionKey,
    AiUsage,
    ApprovalResourceType,
    ApprovalStatus,
    BundleApproval,
    BundleApprovalStatus,
    BundleDraft,
    BundleDraftStatus,
    BundleGeoExport,
    BundleType,
    DraftStatus,
    Health,
    Issue,
    IssueSeverity,
    PlaybookId,
    QueueState,
    RunStatus,
    ScopeType,
    WorkQueueResponse,
    WorkQueueTab,
    WorkQueueViewer,
)
from playbook_engine.work_queue.constants import (
    ACTION_LABELS,
    AI_DISCLOSURE_TEXT,
    CATEGORY_ACTIONS,
    DEFAULT_ACTION,
    GEO_EXPORT_PREVIEW,
    HEALTH_PRIORITY,
    IMPACT_RANKS,
    PILLAR_ACTIONS,
    SCOPE_PREVIEW_LIMIT,
    STATE_PRIORITY,
)


logger = logging.getLogger(__name__)

ISSUE_ACTIONS = (
    ActionKey.FIX_MISSING_METADATA,
    ActionKey.RESOLVE_TECHNICAL_ISSUES,
    ActionKey.IMPROVE_SEARCH_INTENT,
    ActionKey.OPTIMIZE_CONTENT,
)

DRAFT_STATES: dict[DraftStatus, tuple[QueueState, BundleDraftStatus]] = {
    DraftStatus.PARTIAL: (QueueState.PREVIEWED, BundleDraftStatus.PARTIAL),
    DraftStatus.READY: (QueueState.DRAFTS_READY, BundleDraftStatus.READY),
    DraftStatus.FAILED: (QueueState.FAILED, BundleDraftStatus.FAILED),
    DraftStatus.EXPIRED: (QueueState.BLOCKED, BundleDraftStatus.EXPIRED),
}

RUN_STATES: dict[RunStatus, QueueState] = {
    RunStatus.FAILED: QueueState.FAILED,
    RunStatus.STALE: QueueState.BLOCKED,
}

# More than this many affected products makes an automation bundle CRITICAL
CRITICAL_AFFECTED_THRESHOLD = 10


# =============================================================================
# Pure derivation helpers
# =============================================================================

def action_for_issue(issue: Issue) -> ActionKey:
    """Every issue maps to exactly one action key."""
    if issue.pillar_id in PILLAR_ACTIONS:
        return PILLAR_ACTIONS[issue.pillar_id]
    if issue.category in CATEGORY_ACTIONS:
        return CATEGORY_ACTIONS[issue.category]
    if issue.issue_type and "metadata" in issue.issue_type:
        return ActionKey.FIX_MISSING_METADATA
    if issue.intent_type:
        return ActionKey.IMPROVE_SEARCH_INTENT
    return DEFAULT_ACTION


def group_issues(issues: list[Issue]) -> dict[ActionKey, list[Issue]]:
    groups: dict[ActionKey, list[Issue]] = {key: [] for key in ISSUE_ACTIONS}
    for issue in issues:
        groups[action_for_issue(issue)].append(issue)
    return groups


def health_from_severity(issues: list[Issue]) -> Health:
    severities = {issue.severity for issue in issues}
    if IssueSeverity.CRITICAL in severities:
        return Health.CRITICAL
    if IssueSeverity.WARNING in severities:
        return Health.NEEDS_ATTENTION
    return Health.HEALTHY


def preview_list(names: list[str], total: int) -> list[str]:
    if total > SCOPE_PREVIEW_LIMIT:
        return names[:SCOPE_PREVIEW_LIMIT] + [f"+{total - SCOPE_PREVIEW_LIMIT} more"]
    return names[:SCOPE_PREVIEW_LIMIT]


def filter_by_tab(bundles: list[ActionBundle], tab: WorkQueueTab | None) -> list[ActionBundle]:
    if tab == WorkQueueTab.CRITICAL:
        return [b for b in bundles if b.health == Health.CRITICAL and b.state != QueueState.APPLIED]
    if tab == WorkQueueTab.NEEDS_ATTENTION:
        return [b for b in bundles if b.health == Health.NEEDS_ATTENTION and b.state != QueueState.APPLIED]
    if tab == WorkQueueTab.PENDING_APPROVAL:
        return [b for b in bundles if b.state == QueueState.PENDING_APPROVAL]
    if tab == WorkQueueTab.DRAFTS_READY:
        return [b for b in bundles if b.state in (QueueState.DRAFTS_READY, QueueState.APPROVED)]
    if tab == WorkQueueTab.APPLIED_RECENTLY:
        return [b for b in bundles if b.state == QueueState.APPLIED]
    return [b for b in bundles if b.health != Health.HEALTHY and b.state != QueueState.APPLIED]


def _timestamp(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def sort_key(bundle: ActionBundle) -> tuple:
    return (
        STATE_PRIORITY[bundle.state],
        HEALTH_PRIORITY[bundle.health],
        bundle.impact_rank,
        -_timestamp(bundle.updated_at),
        bundle.bundle_id,
    )


def sort_bundles(bundles: list[ActionBundle]) -> list[ActionBundle]:
    return sorted(bundles, key=sort_key)


# =============================================================================
# Service
# =============================================================================

class WorkQueueService:
    def __init__(
        self,
        sessions: SessionFactory,
        roles: RoleResolver,
        scopes: ScopeResolver,
        drafts: DraftService,
        approvals: ApprovalService,
        governance: GovernanceService,
        issues: IssueSource,
        share_links: ShareLinkReader,
        settings: Settings | None = None,
    ):
        self._sessions = sessions
        self.roles = roles
        self.scopes = scopes
        self.drafts = drafts
        self.approvals = approvals
        self.governance = governance
        self.issues = issues
        self.share_links = share_links
        self.settings = settings or get_settings()

    async def get_work_queue(
        self,
        project_id: str,
        user_id: str,
        tab: WorkQueueTab | None = None,
        bundle_type: BundleType | None = None,
        bundle_id: str | None = None,
        now: datetime | None = None,
    ) -> WorkQueueResponse:
        now = now or utcnow()
        project = await self.roles.get_project(project_id)
        role = await self.roles.resolve_role(project_id, user_id)
        capabilities = await self.roles.capabilities(project_id, user_id)

        viewer = WorkQueueViewer(
            role=role,
            capabilities=capabilities.for_viewer(),
            is_multi_user_project=await self.roles.is_multi_user_project(project_id),
        )

        bundles = await self.derive_issue_bundles(project)
        bundles += await self.derive_automation_bundles(project, now)
        geo = await self.derive_geo_export_bundle(project)
        if geo:
            bundles.append(geo)

        if bundle_type:
            bundles = [b for b in bundles if b.bundle_type == bundle_type]
        if bundle_id:
            bundles = [b for b in bundles if b.bundle_id == bundle_id]

        return WorkQueueResponse(viewer=viewer, items=sort_bundles(filter_by_tab(bundles, tab)))

    # =========================================================================
    # Issue bundles
    # =========================================================================

    async def derive_issue_bundles(self, project: Project) -> list[ActionBundle]:
        try:
            issues = await self.issues.list_issues(project.id)
            stamp = project.last_issues_computed_at or project.created_at
            bundles = []

            for action, group in group_issues(issues).items():
                if not group:
                    continue
                health = health_from_severity(group)
                if health == Health.HEALTHY:
                    continue

                product_ids = sorted({pid for issue in group for pid in issue.affected_products})
                titles = await self._product_titles(product_ids[:SCOPE_PREVIEW_LIMIT])

                bundles.append(
                    ActionBundle(
                        bundle_id=f"{BundleType.ASSET_OPTIMIZATION.value}:{action.value}:{project.id}",
                        bundle_type=BundleType.ASSET_OPTIMIZATION,
                        created_at=stamp,
                        updated_at=stamp,
                        scope_type=ScopeType.PRODUCTS if product_ids else ScopeType.STORE_WIDE,
                        scope_count=len(product_ids) or 1,
                        scope_preview_list=preview_list(titles, len(product_ids)),
                        health=health,
                        impact_rank=IMPACT_RANKS[action],
                        recommended_action_key=action,
                        recommended_action_label=ACTION_LABELS[action],
                        ai_usage=AiUsage.NONE,
                        ai_disclosure_text=AI_DISCLOSURE_TEXT[AiUsage.NONE],
                        state=QueueState.NEW,
                    )
                )
            return bundles
        except Exception:
            logger.exception(f"Failed to derive issue bundles for project {project.id}")
            return []

    async def _product_titles(self, product_ids: list[str]) -> list[str]:
        if not product_ids:
            return []
        async with get_session(self._sessions) as db:
            result = await db.execute(select(Product.id, Product.title).where(Product.id.in_(product_ids)))
            titles = dict(result.all())
        return [titles[pid] for pid in product_ids if pid in titles]

    # =========================================================================
    # Automation bundles
    # =========================================================================

    async def derive_automation_bundles(self, project: Project, now: datetime) -> list[ActionBundle]:
        approval_required = await self.governance.is_approval_required(
            project.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY
        )
        bundles = []
        for playbook_id in PlaybookId:
            try:
                bundle = await self._automation_bundle(project, playbook_id, approval_required, now)
            except Exception:
                logger.exception(f"Failed to derive automation bundle {playbook_id.value} for project {project.id}")
                continue
            if bundle:
                bundles.append(bundle)
        return bundles

    async def _automation_bundle(
        self,
        project: Project,
        playbook_id: PlaybookId,
        approval_required: bool,
        now: datetime,
    ) -> ActionBundle | None:
        scope = await self.scopes.resolve(project.id, playbook_id)
        draft = await self.drafts.get_latest_draft(project.id, playbook_id, persist_expiry=False)
        if scope.count == 0 and not draft:
            return None

        last_run = await self._latest_run(project.id, playbook_id)

        state = QueueState.NEW
        draft_info = BundleDraft(
            last_run_id=last_run.id if last_run else None,
            last_run_status=RunStatus(last_run.status) if last_run else None,
        )
        if draft:
            draft_status = DraftStatus.EXPIRED if draft_is_expired(draft, now) else DraftStatus(draft.status)
            state, draft_info.draft_status = DRAFT_STATES[draft_status]
            draft_info.draft_count = draft.draft_generated
            draft_info.draft_coverage = (
                round(draft.draft_generated / draft.affected_total * 100) if draft.affected_total > 0 else 0
            )
            draft_info.last_draft_id = draft.id
        elif last_run and RunStatus(last_run.status) in RUN_STATES:
            state = RUN_STATES[RunStatus(last_run.status)]

        applied = await self._latest_applied_draft(project.id, playbook_id)
        if applied and applied.applied_at > now - timedelta(days=self.settings.applied_recently_days):
            state = QueueState.APPLIED

        approval = None
        if approval_required:
            approval = BundleApproval()
            if draft:
                state = await self._apply_approval(project.id, playbook_id, draft.scope_id, approval, state)

        titles = await self.scopes.preview_titles(project.id, playbook_id, limit=SCOPE_PREVIEW_LIMIT)
        created_at = draft.created_at if draft else project.created_at
        if applied and applied.applied_at:
            updated_at = applied.applied_at
        else:
            updated_at = draft.updated_at if draft else project.created_at

        return ActionBundle(
            bundle_id=(
                f"{BundleType.AUTOMATION_RUN.value}:{ActionKey.FIX_MISSING_METADATA.value}:"
                f"{playbook_id.value}:{project.id}"
            ),
            bundle_type=BundleType.AUTOMATION_RUN,
            created_at=created_at,
            updated_at=updated_at,
            scope_type=ScopeType.PRODUCTS,
            scope_count=scope.count,
            scope_preview_list=preview_list(titles, scope.count),
            scope_query_ref=draft.scope_id if draft else None,
            health=Health.CRITICAL if scope.count > CRITICAL_AFFECTED_THRESHOLD else Health.NEEDS_ATTENTION,
            impact_rank=IMPACT_RANKS[ActionKey.FIX_MISSING_METADATA],
            recommended_action_key=ActionKey.FIX_MISSING_METADATA,
            recommended_action_label=PLAYBOOK_LABELS[playbook_id],
            ai_usage=AiUsage.DRAFTS_ONLY,
            ai_disclosure_text=AI_DISCLOSURE_TEXT[AiUsage.DRAFTS_ONLY],
            state=state,
            approval=approval,
            draft=draft_info,
        )

    async def _apply_approval(
        self,
        project_id: str,
        playbook_id: PlaybookId,
        scope_id: str,
        approval: BundleApproval,
        state: QueueState,
    ) -> QueueState:
        """Fill the approval sub-object; a live request overrides the state."""
        request = await self.approvals.latest_for_resource(
            project_id,
            ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY,
            playbook_resource_id(playbook_id.value, scope_id),
        )
        if not request:
            return state

        status = ApprovalStatus(request.status)
        if status == ApprovalStatus.PENDING_APPROVAL:
            approval.approval_status = BundleApprovalStatus.PENDING
            approval.requested_by = request.requested_by_user_id
            approval.requested_at = request.requested_at
            return QueueState.PENDING_APPROVAL
        if status == ApprovalStatus.APPROVED:
            approval.approval_status = BundleApprovalStatus.APPROVED
            approval.requested_by = request.requested_by_user_id
            approval.requested_at = request.requested_at
            approval.approved_by = request.decided_by_user_id
            approval.approved_at = request.decided_at
            return QueueState.APPROVED
        approval.approval_status = BundleApprovalStatus.REJECTED
        return state

    async def _latest_run(self, project_id: str, playbook_id: PlaybookId) -> PlaybookRun | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookRun)
                .where(PlaybookRun.project_id == project_id)
                .where(PlaybookRun.playbook_id == playbook_id.value)
                .order_by(PlaybookRun.created_at.desc(), PlaybookRun.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _latest_applied_draft(self, project_id: str, playbook_id: PlaybookId) -> PlaybookDraft | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(PlaybookDraft)
                .where(PlaybookDraft.project_id == project_id)
                .where(PlaybookDraft.playbook_id == playbook_id.value)
                .where(PlaybookDraft.applied_at.is_not(None))
                .order_by(PlaybookDraft.applied_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # =========================================================================
    # GEO export bundle
    # =========================================================================

    async def derive_geo_export_bundle(self, project: Project) -> ActionBundle | None:
        try:
            links = await self.share_links.list_share_links(project.id)
        except Exception:
            logger.exception(f"Failed to derive GEO export bundle for project {project.id}")
            return None

        action = ActionKey.SHARE_LINK_GOVERNANCE
        return ActionBundle(
            bundle_id=f"{BundleType.GEO_EXPORT.value}:{action.value}:{project.id}",
            bundle_type=BundleType.GEO_EXPORT,
            created_at=project.created_at,
            updated_at=links[0].created_at if links else project.created_at,
            scope_type=ScopeType.STORE_WIDE,
            scope_count=1,
            scope_preview_list=[GEO_EXPORT_PREVIEW],
            health=Health.NEEDS_ATTENTION,
            impact_rank=IMPACT_RANKS[action],
            recommended_action_key=action,
            recommended_action_label=ACTION_LABELS[action],
            ai_usage=AiUsage.NONE,
            ai_disclosure_text=AI_DISCLOSURE_TEXT[AiUsage.NONE],
            state=QueueState.NEW,
            geo_export=BundleGeoExport(share_link_status=share_link_status(links)),
        )
