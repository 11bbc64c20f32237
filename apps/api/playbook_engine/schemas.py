"""Pydantic schemas for all engine I/O contracts.

These schemas define the strict contracts between:
- API endpoints and clients (camelCase on the wire)
- The apply loop and its per-product fix collaborator
- Work Queue derivation and its consumers
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Enums
# =============================================================================

class PlaybookId(str, Enum):
    """Bulk-fix rules known to the engine."""
    MISSING_SEO_TITLE = "missing_seo_title"
    MISSING_SEO_DESCRIPTION = "missing_seo_description"


class RunType(str, Enum):
    PREVIEW_GENERATE = "PREVIEW_GENERATE"
    DRAFT_GENERATE = "DRAFT_GENERATE"
    APPLY = "APPLY"


class RunStatus(str, Enum):
    """Status of a playbook run. QUEUED -> RUNNING -> terminal."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    STALE = "STALE"


class DraftStatus(str, Enum):
    PARTIAL = "PARTIAL"
    READY = "READY"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class ApprovalStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalResourceType(str, Enum):
    GEO_FIX_APPLY = "GEO_FIX_APPLY"
    ANSWER_BLOCK_SYNC = "ANSWER_BLOCK_SYNC"
    AUTOMATION_PLAYBOOK_APPLY = "AUTOMATION_PLAYBOOK_APPLY"


class ProjectRole(str, Enum):
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class ShareLinkStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class ApplyItemStatus(str, Enum):
    """Per-product outcome recorded in an apply result."""
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    LIMIT_REACHED = "LIMIT_REACHED"


class FixOutcomeKind(str, Enum):
    """Closed set of outcomes a per-product fix can report."""
    UPDATED = "UPDATED"
    SKIPPED = "SKIPPED"
    RATE_LIMITED = "RATE_LIMITED"
    DAILY_LIMIT = "DAILY_LIMIT"
    ERROR = "ERROR"


class FailureReason(str, Enum):
    ERROR = "ERROR"
    LIMIT_REACHED = "LIMIT_REACHED"
    RATE_LIMIT = "RATE_LIMIT"


# =============================================================================
# Playbook Rules
# =============================================================================

class PlaybookRules(CamelModel):
    """Parameters applied to every generated suggestion."""
    enabled: bool = True
    prefix: str = ""
    suffix: str = ""
    max_length: int | None = Field(default=None, gt=0)
    forbidden_phrases: list[str] = Field(default_factory=list)

    def fingerprint(self) -> str:
        """Stable hash of the rule parameters (the run's rulesHash)."""
        canonical = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    def apply_to(self, text: str) -> str:
        """Post-process a generated suggestion."""
        if not self.enabled:
            return text
        for phrase in self.forbidden_phrases:
            if phrase:
                text = text.replace(phrase, "")
        text = " ".join(text.split())
        text = f"{self.prefix}{text}{self.suffix}"
        if self.max_length is not None and len(text) > self.max_length:
            text = text[: self.max_length].rstrip()
        return text


# =============================================================================
# Estimate / Apply Schemas
# =============================================================================

class AiDailyLimit(CamelModel):
    limit: int = Field(..., description="-1 means unlimited")
    used: int
    remaining: int = Field(..., description="-1 means unlimited")


class PlaybookEstimate(CamelModel):
    """Side-effect free preflight for a playbook."""
    project_id: str
    playbook_id: PlaybookId
    total_affected_products: int
    estimated_tokens: int
    plan_id: str
    eligible: bool
    can_proceed: bool
    reasons: list[str] = Field(default_factory=list)
    ai_daily_limit: AiDailyLimit
    scope_id: str = Field(..., description="Must be echoed back when applying")


class FixOutcome(CamelModel):
    """Result of one per-product fix call."""
    kind: FixOutcomeKind
    field: str | None = None
    reason: str | None = None
    message: str | None = None


class ApplyItemResult(CamelModel):
    product_id: str
    status: ApplyItemStatus
    message: str
    updated_fields: dict[str, bool] | None = None


class PlaybookApplyResult(CamelModel):
    """Outcome of an apply pass, including partial progress on a stop."""
    project_id: str
    playbook_id: PlaybookId
    total_affected: int
    attempted: int = 0
    updated: int = 0
    skipped: int = 0
    limit_reached: bool = False
    stopped: bool = False
    stopped_at_item_id: str | None = None
    failure_reason: FailureReason | None = None
    results: list[ApplyItemResult] = Field(default_factory=list)


class ApplyRequest(CamelModel):
    playbook_id: PlaybookId
    scope_id: str = Field(..., min_length=1)
    rules_hash: str | None = None


# =============================================================================
# Run Schemas
# =============================================================================

class TriggerRunRequest(CamelModel):
    playbook_id: PlaybookId
    run_type: RunType
    idempotency_key: str = Field(..., min_length=1, max_length=200)
    scope_id: str | None = None
    rules_hash: str | None = None
    rules: PlaybookRules | None = None
    sample_size: int | None = Field(default=None, gt=0, le=50)


class RunResponse(CamelModel):
    id: str
    project_id: str
    created_by_user_id: str
    playbook_id: str
    run_type: RunType
    status: RunStatus
    scope_id: str | None = None
    rules_hash: str | None = None
    idempotency_key: str
    draft_id: str | None = None
    result_ref: str | None = None
    ai_used: bool = False
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class RunListResponse(CamelModel):
    runs: list[RunResponse]
    total: int


class DraftItem(CamelModel):
    product_id: str
    field: str
    value: str


class DraftResponse(CamelModel):
    id: str
    project_id: str
    playbook_id: str
    scope_id: str
    rules_hash: str
    status: DraftStatus
    affected_total: int
    draft_generated: int
    items: list[DraftItem] = Field(default_factory=list)
    applied_at: datetime | None = None
    applied_by_user_id: str | None = None
    expires_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


# =============================================================================
# Approval / Governance Schemas
# =============================================================================

class CreateApprovalRequest(CamelModel):
    resource_type: ApprovalResourceType
    resource_id: str = Field(..., min_length=1)


class ApprovalDecisionRequest(CamelModel):
    reason: str | None = None


class ApprovalResponse(CamelModel):
    id: str
    project_id: str
    resource_type: ApprovalResourceType
    resource_id: str
    status: ApprovalStatus
    requested_by_user_id: str
    requested_at: datetime
    decided_by_user_id: str | None = None
    decided_at: datetime | None = None
    decision_reason: str | None = None
    consumed: bool = False
    consumed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ApprovalListResponse(CamelModel):
    requests: list[ApprovalResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class ApprovalCheck(CamelModel):
    """Answer of the approval gate for one resource."""
    valid: bool
    approval_id: str | None = None
    status: ApprovalStatus | None = None


class GovernancePolicyResponse(CamelModel):
    project_id: str
    require_approval_for_apply: bool
    updated_at: datetime | None = None


class GovernancePolicyUpdate(CamelModel):
    require_approval_for_apply: bool


# =============================================================================
# Issue Schemas
# =============================================================================

class Issue(CamelModel):
    """A raw issue signal as produced by the crawler."""
    id: str
    title: str
    severity: IssueSeverity
    pillar_id: str | None = None
    category: str | None = None
    issue_type: str | None = None
    intent_type: str | None = None
    affected_products: list[str] = Field(default_factory=list)


# =============================================================================
# Work Queue Schemas
# =============================================================================

class BundleType(str, Enum):
    ASSET_OPTIMIZATION = "ASSET_OPTIMIZATION"
    AUTOMATION_RUN = "AUTOMATION_RUN"
    GEO_EXPORT = "GEO_EXPORT"


class ActionKey(str, Enum):
    FIX_MISSING_METADATA = "FIX_MISSING_METADATA"
    RESOLVE_TECHNICAL_ISSUES = "RESOLVE_TECHNICAL_ISSUES"
    IMPROVE_SEARCH_INTENT = "IMPROVE_SEARCH_INTENT"
    OPTIMIZE_CONTENT = "OPTIMIZE_CONTENT"
    SHARE_LINK_GOVERNANCE = "SHARE_LINK_GOVERNANCE"


class Health(str, Enum):
    CRITICAL = "CRITICAL"
    NEEDS_ATTENTION = "NEEDS_ATTENTION"
    HEALTHY = "HEALTHY"


class QueueState(str, Enum):
    NEW = "NEW"
    PREVIEWED = "PREVIEWED"
    DRAFTS_READY = "DRAFTS_READY"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


class AiUsage(str, Enum):
    NONE = "NONE"
    DRAFTS_ONLY = "DRAFTS_ONLY"


class ScopeType(str, Enum):
    PRODUCTS = "PRODUCTS"
    STORE_WIDE = "STORE_WIDE"


class BundleApprovalStatus(str, Enum):
    NOT_REQUESTED = "NOT_REQUESTED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BundleDraftStatus(str, Enum):
    NONE = "NONE"
    PARTIAL = "PARTIAL"
    READY = "READY"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class WorkQueueTab(str, Enum):
    CRITICAL = "Critical"
    NEEDS_ATTENTION = "NeedsAttention"
    PENDING_APPROVAL = "PendingApproval"
    DRAFTS_READY = "DraftsReady"
    APPLIED_RECENTLY = "AppliedRecently"


class ViewerCapabilities(CamelModel):
    can_generate_drafts: bool
    can_apply: bool
    can_approve: bool
    can_request_approval: bool


class WorkQueueViewer(CamelModel):
    role: ProjectRole
    capabilities: ViewerCapabilities
    is_multi_user_project: bool


class BundleApproval(CamelModel):
    approval_required: bool = True
    approval_status: BundleApprovalStatus = BundleApprovalStatus.NOT_REQUESTED
    requested_by: str | None = None
    requested_at: datetime | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None


class BundleDraft(CamelModel):
    draft_status: BundleDraftStatus = BundleDraftStatus.NONE
    draft_count: int = 0
    draft_coverage: int = 0
    last_draft_id: str | None = None
    last_run_id: str | None = None
    last_run_status: RunStatus | None = None


class BundleGeoExport(CamelModel):
    mutation_free_view: bool = True
    share_link_status: str = "NONE"
    passcode_shown_once: bool = True


class ActionBundle(CamelModel):
    """A derived, ranked unit of pending work. Never persisted."""
    bundle_id: str
    bundle_type: BundleType
    created_at: datetime
    updated_at: datetime
    scope_type: ScopeType
    scope_count: int
    scope_preview_list: list[str] = Field(default_factory=list)
    scope_query_ref: str | None = None
    health: Health
    impact_rank: int
    recommended_action_key: ActionKey
    recommended_action_label: str
    ai_usage: AiUsage
    ai_disclosure_text: str
    state: QueueState
    approval: BundleApproval | None = None
    draft: BundleDraft | None = None
    geo_export: BundleGeoExport | None = None


class WorkQueueResponse(CamelModel):
    viewer: WorkQueueViewer
    items: list[ActionBundle]

