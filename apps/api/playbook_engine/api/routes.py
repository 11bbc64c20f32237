"""FastAPI routes for the Playbook Engine API.

Endpoints (per project):
- GET  /projects/{id}/automation-playbooks/estimate        - Preflight a playbook
- POST /projects/{id}/automation-playbooks/apply           - Apply a playbook now
- POST /projects/{id}/automation-playbooks/runs            - Trigger a run
- GET  /projects/{id}/automation-playbooks/runs            - List runs
- GET  /projects/{id}/automation-playbooks/runs/{runId}    - Get a run
- GET  /projects/{id}/automation-playbooks/{playbookId}/draft - Latest draft
- GET  /projects/{id}/work-queue                           - Ranked action bundles
- POST /projects/{id}/approvals                            - Request approval
- GET  /projects/{id}/approvals                            - List approval requests
- GET  /projects/{id}/approvals/status                     - Latest request for a resource
- POST /projects/{id}/approvals/{approvalId}/approve|reject
- GET|PUT /projects/{id}/governance/policy

Caller identity comes from the ``X-User-Id`` header.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Query, Response

from playbook_engine.api.deps import ServicesDep, UserIdDep
from playbook_engine.schemas import (
    ApplyRequest,
    ApprovalDecisionRequest,
    ApprovalListResponse,
    ApprovalResourceType,
    ApprovalResponse,
    ApprovalStatus,
    BundleType,
    CreateApprovalRequest,
    DraftResponse,
    GovernancePolicyResponse,
    GovernancePolicyUpdate,
    PlaybookApplyResult,
    PlaybookEstimate,
    RunListResponse,
    RunResponse,
    TriggerRunRequest,
    WorkQueueResponse,
    WorkQueueTab,
)
from playbook_engine.services import Services


logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health(services: ServicesDep) -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": services.settings.app_version,
        "environment": services.settings.environment,
    }


# =============================================================================
# Automation Playbooks
# =============================================================================

@router.get("/projects/{project_id}/automation-playbooks/estimate", response_model=PlaybookEstimate)
async def estimate_playbook(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    playbook_id: str = Query(..., alias="playbookId"),
) -> PlaybookEstimate:
    return await services.playbooks.estimate(project_id, playbook_id, user_id)


@router.post("/projects/{project_id}/automation-playbooks/apply", response_model=PlaybookApplyResult)
async def apply_playbook(
    project_id: str,
    request: ApplyRequest,
    services: ServicesDep,
    user_id: UserIdDep,
) -> PlaybookApplyResult:
    return await services.playbooks.apply_playbook(
        project_id,
        request.playbook_id,
        user_id,
        request.scope_id,
        rules_hash=request.rules_hash,
    )


@router.post("/projects/{project_id}/automation-playbooks/runs", response_model=RunResponse)
async def trigger_run(
    project_id: str,
    request: TriggerRunRequest,
    background_tasks: BackgroundTasks,
    response: Response,
    services: ServicesDep,
    user_id: UserIdDep,
) -> RunResponse:
    """Queue a preview, draft or apply run.

    Repeating the same idempotencyKey returns the existing run (200) instead
    of creating a new one (202).
    """
    run, created = await services.playbooks.trigger_run(project_id, user_id, request)
    response.status_code = 202 if created else 200

    if created and services.settings.inline_run_processing:
        background_tasks.add_task(process_run_task, services, run.id)

    return run


async def process_run_task(services: Services, run_id: str) -> None:
    """Background task delivering one run to the processor."""
    try:
        await services.processor.process(run_id)
    except Exception:
        logger.exception(f"Background processing of run {run_id} failed")


@router.get("/projects/{project_id}/automation-playbooks/runs", response_model=RunListResponse)
async def list_runs(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    playbook_id: str | None = Query(default=None, alias="playbookId"),
    limit: int = Query(default=50, ge=1, le=200),
) -> RunListResponse:
    return await services.playbooks.list_runs(project_id, user_id, playbook_id, limit)


@router.get("/projects/{project_id}/automation-playbooks/runs/{run_id}", response_model=RunResponse)
async def get_run(
    project_id: str,
    run_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
) -> RunResponse:
    return await services.playbooks.get_run(project_id, run_id, user_id)


@router.get("/projects/{project_id}/automation-playbooks/{playbook_id}/draft", response_model=DraftResponse)
async def get_latest_draft(
    project_id: str,
    playbook_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
) -> DraftResponse:
    draft = await services.playbooks.get_latest_draft(project_id, playbook_id, user_id)
    return DraftResponse.model_validate(draft, from_attributes=True)


# =============================================================================
# Work Queue
# =============================================================================

@router.get("/projects/{project_id}/work-queue", response_model=WorkQueueResponse)
async def get_work_queue(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    tab: WorkQueueTab | None = None,
    bundle_type: BundleType | None = Query(default=None, alias="bundleType"),
    bundle_id: str | None = Query(default=None, alias="bundleId"),
) -> WorkQueueResponse:
    return await services.work_queue.get_work_queue(
        project_id,
        user_id,
        tab=tab,
        bundle_type=bundle_type,
        bundle_id=bundle_id,
    )


# =============================================================================
# Approvals
# =============================================================================

@router.post("/projects/{project_id}/approvals", response_model=ApprovalResponse, status_code=201)
async def create_approval(
    project_id: str,
    request: CreateApprovalRequest,
    services: ServicesDep,
    user_id: UserIdDep,
) -> ApprovalResponse:
    return await services.approvals.create_request(
        project_id, user_id, request.resource_type, request.resource_id
    )


@router.get("/projects/{project_id}/approvals", response_model=ApprovalListResponse)
async def list_approvals(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    status: ApprovalStatus | None = None,
    resource_type: ApprovalResourceType | None = Query(default=None, alias="resourceType"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
) -> ApprovalListResponse:
    return await services.approvals.list_requests(
        project_id,
        user_id,
        status=status,
        resource_type=resource_type,
        page=page,
        page_size=page_size,
    )


@router.get("/projects/{project_id}/approvals/status", response_model=ApprovalResponse | None)
async def approval_status(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    resource_type: ApprovalResourceType = Query(..., alias="resourceType"),
    resource_id: str = Query(..., alias="resourceId"),
) -> ApprovalResponse | None:
    return await services.approvals.get_status(project_id, user_id, resource_type, resource_id)


@router.post("/projects/{project_id}/approvals/{approval_id}/approve", response_model=ApprovalResponse)
async def approve(
    project_id: str,
    approval_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    request: ApprovalDecisionRequest | None = None,
) -> ApprovalResponse:
    reason = request.reason if request else None
    return await services.approvals.approve(project_id, approval_id, user_id, reason)


@router.post("/projects/{project_id}/approvals/{approval_id}/reject", response_model=ApprovalResponse)
async def reject(
    project_id: str,
    approval_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
    request: ApprovalDecisionRequest | None = None,
) -> ApprovalResponse:
    reason = request.reason if request else None
    return await services.approvals.reject(project_id, approval_id, user_id, reason)


# =============================================================================
# Governance
# =============================================================================

@router.get("/projects/{project_id}/governance/policy", response_model=GovernancePolicyResponse)
async def get_governance_policy(
    project_id: str,
    services: ServicesDep,
    user_id: UserIdDep,
) -> GovernancePolicyResponse:
    return await services.governance.get_policy(project_id, user_id)


@router.put("/projects/{project_id}/governance/policy", response_model=GovernancePolicyResponse)
async def update_governance_policy(
    project_id: str,
    request: GovernancePolicyUpdate,
    services: ServicesDep,
    user_id: UserIdDep,
) -> GovernancePolicyResponse:
    return await services.governance.update_policy(
        project_id, user_id, request.require_approval_for_apply
    )
