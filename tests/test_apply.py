"""Tests for the apply loop and the service-level apply gates."""

from __future__ import annotations

import pytest
from sqlmodel import select

from playbook_engine.database.models import ApprovalRequest, PlaybookRun, TokenUsage
from playbook_engine.database.session import get_session
from playbook_engine.errors import (
    ApprovalRequiredError,
    AuthorizationError,
    DraftNotFoundError,
    EntitlementError,
    ScopeConflictError,
)
from playbook_engine.playbooks.fixers import DraftFixer
from playbook_engine.schemas import (
    ApplyItemStatus,
    ApprovalResourceType,
    FailureReason,
    FixOutcomeKind,
    PlaybookId,
    RunType,
    TriggerRunRequest,
)

from helpers import ScriptedFixer, outcome


async def setup_project(seed, plan="pro", count=3):
    owner = await seed.user(plan=plan)
    project = await seed.project(owner)
    products = await seed.products(project, count)
    return owner, project, products


async def scope_id_for(services, project, playbook=PlaybookId.MISSING_SEO_TITLE):
    return (await services.scopes.resolve(project.id, playbook)).scope_id


# ─────────────────────────────────────────────────────────────────────────────
# Pre-loop gates
# ─────────────────────────────────────────────────────────────────────────────

class TestApplyGates:
    @pytest.mark.asyncio
    async def test_scope_conflict_touches_nothing(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, products = await setup_project(seed)
        scope_id = await scope_id_for(services, project)

        await seed.products(project, 1)

        with pytest.raises(ScopeConflictError) as exc_info:
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        error = exc_info.value
        assert error.provided_scope_id == scope_id
        assert error.expected_scope_id == await scope_id_for(services, project)
        assert error.to_payload()["expectedScopeId"] == error.expected_scope_id
        assert fixer.calls == []
        assert fixer.prepared is False

    @pytest.mark.asyncio
    async def test_scope_conflict_when_item_removed(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, products = await setup_project(seed)
        scope_id = await scope_id_for(services, project)

        await seed.set_field(products[1].id, "seo_title", "Fixed elsewhere")

        with pytest.raises(ScopeConflictError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)
        assert fixer.calls == []

    @pytest.mark.asyncio
    async def test_free_plan_is_blocked(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, _ = await setup_project(seed, plan="free")
        scope_id = await scope_id_for(services, project)

        with pytest.raises(EntitlementError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)
        assert fixer.calls == []

    @pytest.mark.asyncio
    async def test_viewer_cannot_apply(self, make_services, seed):
        services = make_services(fixer=ScriptedFixer())
        owner, project, _ = await setup_project(seed)
        viewer = await seed.user()
        await seed.member(project, viewer, "VIEWER")
        scope_id = await scope_id_for(services, project)

        with pytest.raises(AuthorizationError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", viewer.id, scope_id)

    @pytest.mark.asyncio
    async def test_already_fixed_scope_returns_zeros(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner = await seed.user()
        project = await seed.project(owner)
        await seed.products(project, 3, seo_title="Already there")
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.total_affected == 0
        assert result.attempted == 0
        assert result.updated == 0
        assert result.skipped == 0
        assert result.limit_reached is False
        assert result.stopped is False
        assert result.results == []
        assert fixer.prepared is False

    @pytest.mark.asyncio
    async def test_quota_exhausted_before_loop(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, _ = await setup_project(seed)
        await seed.usage(owner, project, 25)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.stopped is True
        assert result.limit_reached is True
        assert result.failure_reason == FailureReason.LIMIT_REACHED
        assert result.attempted == 0
        assert result.results == []
        assert fixer.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Bounded iteration
# ─────────────────────────────────────────────────────────────────────────────

class TestApplyLoop:
    @pytest.mark.asyncio
    async def test_all_updated(self, make_services, seed, sessions):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, products = await setup_project(seed)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert fixer.calls == [p.id for p in products]
        assert result.total_affected == 3
        assert result.attempted == 3
        assert result.updated == 3
        assert result.stopped is False
        assert result.failure_reason is None
        assert [r.status for r in result.results] == [ApplyItemStatus.UPDATED] * 3
        assert result.results[0].updated_fields == {"seoTitle": True}

        async with get_session(sessions) as db:
            usage = (await db.execute(select(TokenUsage))).scalars().all()
        assert len(usage) == 1
        assert usage[0].user_id == owner.id
        assert usage[0].amount == 3 * 400
        assert usage[0].source == "automation_playbook:missing_seo_title"
        assert await services.quota.get_monthly_token_usage(owner.id) == 3 * 400

    @pytest.mark.asyncio
    async def test_skipped_items_do_not_stop(self, make_services, seed):
        owner, project, products = await setup_project(seed)
        fixer = ScriptedFixer({products[0].id: outcome(FixOutcomeKind.SKIPPED, reason="already_has_value")})
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.attempted == 3
        assert result.updated == 2
        assert result.skipped == 1
        assert result.results[0].status == ApplyItemStatus.SKIPPED
        assert result.results[0].message == "already_has_value"

    @pytest.mark.asyncio
    async def test_stops_at_first_error(self, make_services, seed, sessions):
        owner, project, products = await setup_project(seed)
        fixer = ScriptedFixer({products[1].id: outcome(FixOutcomeKind.ERROR, message="boom")})
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.attempted == 2
        assert result.updated == 1
        assert result.stopped is True
        assert result.failure_reason == FailureReason.ERROR
        assert result.stopped_at_item_id == products[1].id
        assert products[2].id not in [r.product_id for r in result.results]
        assert fixer.calls == [products[0].id, products[1].id]

        async with get_session(sessions) as db:
            usage = (await db.execute(select(TokenUsage))).scalars().all()
        assert [u.amount for u in usage] == [400]

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_an_error_stop(self, make_services, seed):
        owner, project, products = await setup_project(seed)
        fixer = ScriptedFixer({products[1].id: RuntimeError("connection reset")})
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.attempted == 2
        assert result.updated == 1
        assert result.failure_reason == FailureReason.ERROR
        assert result.results[-1].status == ApplyItemStatus.FAILED
        assert "connection reset" in result.results[-1].message

    @pytest.mark.asyncio
    async def test_daily_limit_from_collaborator(self, make_services, seed):
        owner, project, products = await setup_project(seed)
        fixer = ScriptedFixer({products[1].id: outcome(FixOutcomeKind.DAILY_LIMIT)})
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert result.stopped is True
        assert result.limit_reached is True
        assert result.failure_reason == FailureReason.LIMIT_REACHED
        assert result.results[-1].status == ApplyItemStatus.LIMIT_REACHED
        assert result.updated == 1
        assert len(result.results) == 2

    @pytest.mark.asyncio
    async def test_budget_runs_out_mid_loop(self, make_services, seed, sessions):
        owner, project, products = await setup_project(seed)
        await seed.usage(owner, project, 24)

        async def consume(user_id, product_id):
            await seed.usage(owner, project, 1)

        fixer = ScriptedFixer(on_fix=consume)
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert fixer.calls == [products[0].id]
        assert result.updated == 1
        assert result.attempted == 1
        assert result.limit_reached is True
        assert result.stopped_at_item_id == products[1].id
        assert result.results[-1].status == ApplyItemStatus.LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_attempts_bounded_by_remaining_budget(self, make_services, seed):
        owner, project, products = await setup_project(seed, count=5)
        await seed.usage(owner, project, 23)
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        estimate = await services.playbooks.estimate(project.id, "missing_seo_title", owner.id)

        result = await services.playbooks.apply_playbook(
            project.id, "missing_seo_title", owner.id, estimate.scope_id
        )

        assert fixer.calls == [products[0].id, products[1].id]
        assert result.attempted == 2
        assert result.updated == 2
        assert result.stopped is True
        assert result.limit_reached is True
        assert result.failure_reason == FailureReason.LIMIT_REACHED
        assert result.stopped_at_item_id == products[2].id
        assert [r.status for r in result.results] == [
            ApplyItemStatus.UPDATED,
            ApplyItemStatus.UPDATED,
            ApplyItemStatus.LIMIT_REACHED,
        ]

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, make_services, seed):
        owner, project, products = await setup_project(seed, count=2)
        fixer = ScriptedFixer({
            products[0].id: [outcome(FixOutcomeKind.RATE_LIMITED), outcome(FixOutcomeKind.UPDATED)],
        })
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert fixer.calls == [products[0].id, products[0].id, products[1].id]
        assert result.attempted == 2
        assert result.updated == 2
        assert result.stopped is False

    @pytest.mark.asyncio
    async def test_rate_limit_retries_are_bounded(self, make_services, seed, settings):
        owner, project, products = await setup_project(seed)
        fixer = ScriptedFixer({products[0].id: outcome(FixOutcomeKind.RATE_LIMITED)})
        services = make_services(fixer=fixer)
        scope_id = await scope_id_for(services, project)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert fixer.calls == [products[0].id] * (settings.apply_rate_limit_retries + 1)
        assert result.attempted == 1
        assert result.stopped is True
        assert result.failure_reason == FailureReason.RATE_LIMIT
        assert result.limit_reached is False
        assert result.results[0].status == ApplyItemStatus.FAILED

    @pytest.mark.asyncio
    async def test_second_pass_skips_fixed_products(self, services, seed):
        owner, project, products = await setup_project(seed)
        run, _ = await services.playbooks.trigger_run(
            project.id,
            owner.id,
            TriggerRunRequest(
                playbook_id=PlaybookId.MISSING_SEO_TITLE,
                run_type=RunType.DRAFT_GENERATE,
                idempotency_key="draft-1",
                scope_id=await scope_id_for(services, project),
            ),
        )
        await services.processor.process(run.id)
        scope_id = await scope_id_for(services, project)

        first = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)
        assert first.updated == 3

        fresh_scope = await scope_id_for(services, project)
        second = await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, fresh_scope)
        assert second.total_affected == 0
        assert second.attempted == 0


# ─────────────────────────────────────────────────────────────────────────────
# Draft-backed fixer
# ─────────────────────────────────────────────────────────────────────────────

class TestDraftFixer:
    @pytest.mark.asyncio
    async def test_apply_without_draft_is_refused(self, services, seed):
        owner, project, products = await setup_project(seed)
        scope_id = await scope_id_for(services, project)

        with pytest.raises(DraftNotFoundError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        for product in products:
            assert (await seed.get_product(product.id)).seo_title is None

    @pytest.mark.asyncio
    async def test_skips_products_without_suggestion_or_with_value(self, sessions, seed):
        owner, project, products = await setup_project(seed, count=2)
        fixer = DraftFixer(sessions)
        fixer._values = {products[0].id: "Generated"}

        await seed.set_field(products[0].id, "seo_title", "Manual")

        already = await fixer.fix(owner.id, products[0].id, "missing_seo_title")
        missing = await fixer.fix(owner.id, products[1].id, "missing_seo_title")

        assert already.kind == FixOutcomeKind.SKIPPED
        assert already.reason == "already_has_value"
        assert missing.kind == FixOutcomeKind.SKIPPED
        assert missing.reason == "no_suggestion"
        assert (await seed.get_product(products[0].id)).seo_title == "Manual"


# ─────────────────────────────────────────────────────────────────────────────
# Approval gate on apply
# ─────────────────────────────────────────────────────────────────────────────

class TestApplyApproval:
    @pytest.mark.asyncio
    async def test_apply_requires_approval_when_policy_says_so(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, _ = await setup_project(seed)
        await seed.require_approval(project)
        scope_id = await scope_id_for(services, project)

        with pytest.raises(ApprovalRequiredError) as exc_info:
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        assert exc_info.value.details["resourceId"] == f"missing_seo_title:{scope_id}"
        assert fixer.calls == []

    @pytest.mark.asyncio
    async def test_pending_approval_is_not_enough(self, make_services, seed):
        services = make_services(fixer=ScriptedFixer())
        owner, project, _ = await setup_project(seed)
        await seed.require_approval(project)
        scope_id = await scope_id_for(services, project)
        await services.approvals.create_request(
            project.id, owner.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, f"missing_seo_title:{scope_id}"
        )

        with pytest.raises(ApprovalRequiredError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

    @pytest.mark.asyncio
    async def test_approved_apply_consumes_approval(self, make_services, seed, sessions):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, _ = await setup_project(seed)
        editor = await seed.user()
        await seed.member(project, editor, "EDITOR")
        await seed.require_approval(project)
        scope_id = await scope_id_for(services, project)
        resource_id = f"missing_seo_title:{scope_id}"

        request = await services.approvals.create_request(
            project.id, editor.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, resource_id
        )
        await services.approvals.approve(project.id, request.id, owner.id)

        result = await services.playbooks.apply_playbook(project.id, "missing_seo_title", editor.id, scope_id)
        assert result.updated == 3

        async with get_session(sessions) as db:
            stored = await db.get(ApprovalRequest, request.id)
        assert stored.consumed is True
        assert stored.consumed_at is not None

        check = await services.approvals.has_valid_approval(
            project.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, resource_id
        )
        assert check.valid is False

    @pytest.mark.asyncio
    async def test_approval_cannot_be_used_twice(self, make_services, seed):
        fixer = ScriptedFixer()
        services = make_services(fixer=fixer)
        owner, project, _ = await setup_project(seed)
        await seed.require_approval(project)
        scope_id = await scope_id_for(services, project)
        request = await services.approvals.create_request(
            project.id, owner.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, f"missing_seo_title:{scope_id}"
        )
        await services.approvals.approve(project.id, request.id, owner.id)

        assert await services.approvals.mark_consumed(request.id) is True
        assert await services.approvals.mark_consumed(request.id) is False

        with pytest.raises(ApprovalRequiredError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)
        assert fixer.calls == []

    @pytest.mark.asyncio
    async def test_raised_pass_releases_approval(self, make_services, seed, sessions):
        services = make_services(fixer=ScriptedFixer())
        owner, project, products = await setup_project(seed)
        await seed.require_approval(project)
        scope_id = await scope_id_for(services, project)
        resource_id = f"missing_seo_title:{scope_id}"
        request = await services.approvals.create_request(
            project.id, owner.id, ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY, resource_id
        )
        await services.approvals.approve(project.id, request.id, owner.id)
        await seed.set_field(products[0].id, "seo_title", "Fixed elsewhere")

        with pytest.raises(ScopeConflictError):
            await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        async with get_session(sessions) as db:
            stored = await db.get(ApprovalRequest, request.id)
        assert stored.consumed is False
        assert stored.consumed_at is None

    @pytest.mark.asyncio
    async def test_apply_records_no_run(self, make_services, seed, sessions):
        services = make_services(fixer=ScriptedFixer())
        owner, project, _ = await setup_project(seed)
        scope_id = await scope_id_for(services, project)

        await services.playbooks.apply_playbook(project.id, "missing_seo_title", owner.id, scope_id)

        async with get_session(sessions) as db:
            runs = (await db.execute(select(PlaybookRun))).scalars().all()
        assert runs == []
