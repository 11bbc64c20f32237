"""Tests for the approval gate and governance policy."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from playbook_engine.database.models import ApprovalRequest
from playbook_engine.database.session import get_session
from playbook_engine.errors import (
    ApprovalConflictError,
    ApprovalStateError,
    AuthorizationError,
    NotFoundError,
)
from playbook_engine.schemas import ApprovalResourceType, ApprovalStatus

RESOURCE = ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY


async def team_project(seed):
    owner = await seed.user()
    editor = await seed.user()
    viewer = await seed.user()
    project = await seed.project(owner)
    await seed.member(project, editor, "EDITOR")
    await seed.member(project, viewer, "VIEWER")
    return project, owner, editor, viewer


# ─────────────────────────────────────────────────────────────────────────────
# Request lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestApprovalRequests:
    @pytest.mark.asyncio
    async def test_one_live_request_per_resource(self, services, seed):
        project, owner, editor, _ = await team_project(seed)

        first = await services.approvals.create_request(project.id, editor.id, RESOURCE, "missing_seo_title:abc")
        assert first.status == ApprovalStatus.PENDING_APPROVAL

        with pytest.raises(ApprovalConflictError) as exc_info:
            await services.approvals.create_request(project.id, owner.id, RESOURCE, "missing_seo_title:abc")
        assert exc_info.value.details["approvalId"] == first.id

        await services.approvals.approve(project.id, first.id, owner.id)
        with pytest.raises(ApprovalConflictError):
            await services.approvals.create_request(project.id, editor.id, RESOURCE, "missing_seo_title:abc")

    @pytest.mark.asyncio
    async def test_other_resources_are_independent(self, services, seed):
        project, _, editor, _ = await team_project(seed)

        await services.approvals.create_request(project.id, editor.id, RESOURCE, "missing_seo_title:abc")
        other = await services.approvals.create_request(project.id, editor.id, RESOURCE, "missing_seo_title:def")
        geo = await services.approvals.create_request(
            project.id, editor.id, ApprovalResourceType.GEO_FIX_APPLY, "missing_seo_title:abc"
        )

        assert other.id != geo.id

    @pytest.mark.asyncio
    async def test_reject_allows_a_new_request(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        first = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")

        rejected = await services.approvals.reject(project.id, first.id, owner.id, reason="not now")
        second = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")

        assert rejected.status == ApprovalStatus.REJECTED
        assert rejected.decision_reason == "not now"
        assert rejected.decided_by_user_id == owner.id
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_consumed_approval_allows_a_new_request(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        first = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")
        await services.approvals.approve(project.id, first.id, owner.id)

        await services.approvals.mark_consumed(first.id)
        second = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")

        assert second.status == ApprovalStatus.PENDING_APPROVAL

    @pytest.mark.asyncio
    async def test_concurrent_insert_is_rejected_by_the_store(self, services, seed, sessions):
        project, _, editor, _ = await team_project(seed)
        await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")

        with pytest.raises(IntegrityError):
            async with get_session(sessions) as db:
                db.add(ApprovalRequest(
                    project_id=project.id,
                    resource_type=RESOURCE.value,
                    resource_id="r1",
                    requested_by_user_id=editor.id,
                ))


# ─────────────────────────────────────────────────────────────────────────────
# Decisions
# ─────────────────────────────────────────────────────────────────────────────

class TestApprovalDecisions:
    @pytest.mark.asyncio
    async def test_only_owner_can_decide(self, services, seed):
        project, owner, editor, viewer = await team_project(seed)
        request = await services.approvals.create_request(project.id, viewer.id, RESOURCE, "r1")

        for user in (editor, viewer):
            with pytest.raises(AuthorizationError):
                await services.approvals.approve(project.id, request.id, user.id)

        approved = await services.approvals.approve(project.id, request.id, owner.id)
        assert approved.status == ApprovalStatus.APPROVED
        assert approved.decided_at is not None

    @pytest.mark.asyncio
    async def test_decided_request_cannot_be_decided_again(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        request = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")
        await services.approvals.approve(project.id, request.id, owner.id)

        with pytest.raises(ApprovalStateError):
            await services.approvals.reject(project.id, request.id, owner.id)

    @pytest.mark.asyncio
    async def test_request_from_other_project_is_not_found(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        other_owner = await seed.user()
        other = await seed.project(other_owner)
        request = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")

        with pytest.raises(NotFoundError):
            await services.approvals.approve(other.id, request.id, other_owner.id)

    @pytest.mark.asyncio
    async def test_gate_check(self, services, seed):
        project, owner, editor, _ = await team_project(seed)

        missing = await services.approvals.has_valid_approval(project.id, RESOURCE, "r1")
        request = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")
        pending = await services.approvals.has_valid_approval(project.id, RESOURCE, "r1")
        await services.approvals.approve(project.id, request.id, owner.id)
        approved = await services.approvals.has_valid_approval(project.id, RESOURCE, "r1")

        assert missing.valid is False
        assert missing.status is None
        assert pending.valid is False
        assert pending.status == ApprovalStatus.PENDING_APPROVAL
        assert approved.valid is True
        assert approved.approval_id == request.id


# ─────────────────────────────────────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────────────────────────────────────

class TestApprovalQueries:
    @pytest.mark.asyncio
    async def test_status_includes_consumed_requests(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        request = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")
        await services.approvals.approve(project.id, request.id, owner.id)
        await services.approvals.mark_consumed(request.id)

        status = await services.approvals.get_status(project.id, editor.id, RESOURCE, "r1")

        assert status.id == request.id
        assert status.consumed is True
        assert await services.approvals.get_status(project.id, editor.id, RESOURCE, "unknown") is None

    @pytest.mark.asyncio
    async def test_list_is_paged(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        for i in range(5):
            await services.approvals.create_request(project.id, editor.id, RESOURCE, f"r{i}")

        page_one = await services.approvals.list_requests(project.id, owner.id, page=1, page_size=2)
        page_three = await services.approvals.list_requests(project.id, owner.id, page=3, page_size=2)
        capped = await services.approvals.list_requests(project.id, owner.id, page_size=500)

        assert page_one.total == 5
        assert len(page_one.requests) == 2
        assert page_one.has_more is True
        assert len(page_three.requests) == 1
        assert page_three.has_more is False
        assert capped.page_size == 100

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, services, seed):
        project, owner, editor, _ = await team_project(seed)
        first = await services.approvals.create_request(project.id, editor.id, RESOURCE, "r1")
        await services.approvals.create_request(project.id, editor.id, RESOURCE, "r2")
        await services.approvals.approve(project.id, first.id, owner.id)

        approved = await services.approvals.list_requests(project.id, owner.id, status=ApprovalStatus.APPROVED)

        assert [r.id for r in approved.requests] == [first.id]

    @pytest.mark.asyncio
    async def test_non_member_cannot_list(self, services, seed):
        project, *_ = await team_project(seed)
        stranger = await seed.user()

        with pytest.raises(AuthorizationError):
            await services.approvals.list_requests(project.id, stranger.id)


# ─────────────────────────────────────────────────────────────────────────────
# Governance policy
# ─────────────────────────────────────────────────────────────────────────────

class TestGovernance:
    @pytest.mark.asyncio
    async def test_default_policy_requires_nothing(self, services, seed):
        project, owner, *_ = await team_project(seed)

        policy = await services.governance.get_policy(project.id, owner.id)

        assert policy.require_approval_for_apply is False
        assert await services.governance.is_approval_required(project.id, RESOURCE) is False

    @pytest.mark.asyncio
    async def test_owner_updates_policy(self, services, seed):
        project, owner, editor, _ = await team_project(seed)

        updated = await services.governance.update_policy(project.id, owner.id, True)
        read_back = await services.governance.get_policy(project.id, editor.id)

        assert updated.require_approval_for_apply is True
        assert read_back.require_approval_for_apply is True
        assert await services.governance.is_approval_required(project.id, RESOURCE) is True

    @pytest.mark.asyncio
    async def test_editor_cannot_update_policy(self, services, seed):
        project, _, editor, _ = await team_project(seed)

        with pytest.raises(AuthorizationError):
            await services.governance.update_policy(project.id, editor.id, True)
