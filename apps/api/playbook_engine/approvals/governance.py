"""Per-project governance policy."""

from __future__ import annotations

import logging

from sqlmodel import select

from playbook_engine.access.roles import RoleResolver
from playbook_engine.database.models import GovernancePolicy, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.schemas import ApprovalResourceType, GovernancePolicyResponse


logger = logging.getLogger(__name__)

# Resource types the apply-approval policy covers
GATED_RESOURCE_TYPES = frozenset({
    ApprovalResourceType.AUTOMATION_PLAYBOOK_APPLY,
    ApprovalResourceType.GEO_FIX_APPLY,
    ApprovalResourceType.ANSWER_BLOCK_SYNC,
})


class GovernanceService:
    def __init__(self, sessions: SessionFactory, roles: RoleResolver):
        self._sessions = sessions
        self.roles = roles

    async def _load(self, project_id: str) -> GovernancePolicy | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(GovernancePolicy).where(GovernancePolicy.project_id == project_id)
            )
            return result.scalar_one_or_none()

    async def is_approval_required(self, project_id: str, resource_type: ApprovalResourceType) -> bool:
        if resource_type not in GATED_RESOURCE_TYPES:
            return False
        policy = await self._load(project_id)
        return bool(policy and policy.require_approval_for_apply)

    async def get_policy(self, project_id: str, user_id: str) -> GovernancePolicyResponse:
        await self.roles.assert_project_access(project_id, user_id)
        policy = await self._load(project_id)
        if not policy:
            return GovernancePolicyResponse(project_id=project_id, require_approval_for_apply=False)
        return GovernancePolicyResponse(
            project_id=project_id,
            require_approval_for_apply=policy.require_approval_for_apply,
            updated_at=policy.updated_at,
        )

    async def update_policy(
        self,
        project_id: str,
        user_id: str,
        require_approval_for_apply: bool,
    ) -> GovernancePolicyResponse:
        await self.roles.require(
            project_id,
            user_id,
            "can_modify_settings",
            "Only project owners can change governance settings",
        )

        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(GovernancePolicy).where(GovernancePolicy.project_id == project_id)
            )
            policy = result.scalar_one_or_none()
            if not policy:
                policy = GovernancePolicy(project_id=project_id)
                db.add(policy)
            policy.require_approval_for_apply = require_approval_for_apply
            policy.updated_at = utcnow()

        logger.info(
            f"Governance policy for project {project_id} updated by {user_id}: "
            f"require_approval_for_apply={require_approval_for_apply}"
        )
        return GovernancePolicyResponse(
            project_id=project_id,
            require_approval_for_apply=policy.require_approval_for_apply,
            updated_at=policy.updated_at,
        )
