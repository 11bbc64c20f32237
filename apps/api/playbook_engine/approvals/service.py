"""Approval Gate.

At most one unconsumed PENDING_APPROVAL/APPROVED request may exist per
(project, resourceType, resourceId). The service checks this before insert,
and a partial unique index rejects the loser of a concurrent create.
Approving and rejecting require the ``can_approve`` capability.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from playbook_engine.access.roles import RoleResolver
from playbook_engine.database.models import ApprovalRequest, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import (
    ApprovalConflictError,
    ApprovalStateError,
    NotFoundError,
    ValidationError,
)
from playbook_engine.schemas import (
    ApprovalCheck,
    ApprovalListResponse,
    ApprovalResourceType,
    ApprovalResponse,
    ApprovalStatus,
)


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

LIVE_STATUSES = (ApprovalStatus.PENDING_APPROVAL.value, ApprovalStatus.APPROVED.value)


def playbook_resource_id(playbook_id: str, scope_id: str) -> str:
    """Approval resource id binding a playbook to one scope."""
    return f"{playbook_id}:{scope_id}"


def to_response(request: ApprovalRequest) -> ApprovalResponse:
    return ApprovalResponse.model_validate(request, from_attributes=True)


class ApprovalService:
    def __init__(self, sessions: SessionFactory, roles: RoleResolver):
        self._sessions = sessions
        self.roles = roles

    async def _live_request(
        self,
        project_id: str,
        resource_type: ApprovalResourceType,
        resource_id: str,
    ) -> ApprovalRequest | None:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(ApprovalRequest)
                .where(ApprovalRequest.project_id == project_id)
                .where(ApprovalRequest.resource_type == resource_type.value)
                .where(ApprovalRequest.resource_id == resource_id)
                .where(ApprovalRequest.consumed == False)  # noqa: E712
                .where(ApprovalRequest.status.in_(LIVE_STATUSES))
                .order_by(ApprovalRequest.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # =========================================================================
    # Requests
    # =========================================================================

    async def create_request(
        self,
        project_id: str,
        user_id: str,
        resource_type: ApprovalResourceType,
        resource_id: str,
    ) -> ApprovalResponse:
        await self.roles.require(
            project_id,
            user_id,
            "can_request_approval",
            "You do not have permission to request approvals",
        )
        if not resource_id:
            raise ValidationError("resourceId is required")

        existing = await self._live_request(project_id, resource_type, resource_id)
        if existing:
            raise ApprovalConflictError(
                "An approval request already exists for this resource",
                approvalId=existing.id,
                status=existing.status,
            )

        request = ApprovalRequest(
            project_id=project_id,
            resource_type=resource_type.value,
            resource_id=resource_id,
            requested_by_user_id=user_id,
        )
        try:
            async with get_session(self._sessions) as db:
                db.add(request)
        except IntegrityError:
            raise ApprovalConflictError(
                "An approval request already exists for this resource"
            ) from None

        logger.info(f"Approval {request.id} requested by {user_id} for {resource_type.value}:{resource_id}")
        return to_response(request)

    async def _decide(
        self,
        project_id: str,
        approval_id: str,
        user_id: str,
        status: ApprovalStatus,
        reason: str | None,
    ) -> ApprovalResponse:
        await self.roles.require(
            project_id,
            user_id,
            "can_approve",
            "Only project owners can approve or reject requests",
        )

        async with get_session(self._sessions) as db:
            request = await db.get(ApprovalRequest, approval_id)
            if not request or request.project_id != project_id:
                raise NotFoundError("Approval request not found")
            if request.status != ApprovalStatus.PENDING_APPROVAL.value:
                raise ApprovalStateError(
                    f"Approval request is {request.status}, only pending requests can be decided",
                    status=request.status,
                )
            now = utcnow()
            request.status = status.value
            request.decided_by_user_id = user_id
            request.decided_at = now
            request.decision_reason = reason
            request.updated_at = now

        logger.info(f"Approval {approval_id} {status.value} by {user_id}")
        return to_response(request)

    async def approve(
        self,
        project_id: str,
        approval_id: str,
        user_id: str,
        reason: str | None = None,
    ) -> ApprovalResponse:
        return await self._decide(project_id, approval_id, user_id, ApprovalStatus.APPROVED, reason)

    async def reject(
        self,
        project_id: str,
        approval_id: str,
        user_id: str,
        reason: str | None = None,
    ) -> ApprovalResponse:
        return await self._decide(project_id, approval_id, user_id, ApprovalStatus.REJECTED, reason)

    # =========================================================================
    # Gate
    # =========================================================================

    async def has_valid_approval(
        self,
        project_id: str,
        resource_type: ApprovalResourceType,
        resource_id: str,
    ) -> ApprovalCheck:
        request = await self._live_request(project_id, resource_type, resource_id)
        if request and request.status == ApprovalStatus.APPROVED.value:
            return ApprovalCheck(valid=True, approval_id=request.id, status=ApprovalStatus.APPROVED)
        return ApprovalCheck(
            valid=False,
            approval_id=request.id if request else None,
            status=ApprovalStatus(request.status) if request else None,
        )

    async def mark_consumed(self, approval_id: str) -> bool:
        """Consume an approval. False when it was already consumed."""
        now = utcnow()
        async with get_session(self._sessions) as db:
            result = await db.execute(
                update(ApprovalRequest)
                .where(ApprovalRequest.id == approval_id)
                .where(ApprovalRequest.consumed == False)  # noqa: E712
                .values(consumed=True, consumed_at=now, updated_at=now)
            )
            if result.rowcount != 1:
                if not await db.get(ApprovalRequest, approval_id):
                    raise NotFoundError("Approval request not found")
                return False
        logger.info(f"Approval {approval_id} consumed")
        return True

    async def release(self, approval_id: str) -> None:
        """Undo a consumption when the apply it guarded never ran."""
        async with get_session(self._sessions) as db:
            await db.execute(
                update(ApprovalRequest)
                .where(ApprovalRequest.id == approval_id)
                .where(ApprovalRequest.consumed == True)  # noqa: E712
                .values(consumed=False, consumed_at=None, updated_at=utcnow())
            )
        logger.info(f"Approval {approval_id} released")

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(
        self,
        project_id: str,
        user_id: str,
        resource_type: ApprovalResourceType,
        resource_id: str,
    ) -> ApprovalResponse | None:
        """Most recent request for a resource, consumed or not."""
        await self.roles.assert_project_access(project_id, user_id)
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(ApprovalRequest)
                .where(ApprovalRequest.project_id == project_id)
                .where(ApprovalRequest.resource_type == resource_type.value)
                .where(ApprovalRequest.resource_id == resource_id)
                .order_by(ApprovalRequest.created_at.desc())
                .limit(1)
            )
            request = result.scalar_one_or_none()
        return to_response(request) if request else None

    async def latest_for_resource(
        self,
        project_id: str,
        resource_type: ApprovalResourceType,
        resource_id: str,
    ) -> ApprovalRequest | None:
        """Latest unconsumed request for a resource, no access check."""
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(ApprovalRequest)
                .where(ApprovalRequest.project_id == project_id)
                .where(ApprovalRequest.resource_type == resource_type.value)
                .where(ApprovalRequest.resource_id == resource_id)
                .where(ApprovalRequest.consumed == False)  # noqa: E712
                .order_by(ApprovalRequest.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_requests(
        self,
        project_id: str,
        user_id: str,
        status: ApprovalStatus | None = None,
        resource_type: ApprovalResourceType | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> ApprovalListResponse:
        await self.roles.assert_project_access(project_id, user_id)
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        filters = [ApprovalRequest.project_id == project_id]
        if status:
            filters.append(ApprovalRequest.status == status.value)
        if resource_type:
            filters.append(ApprovalRequest.resource_type == resource_type.value)

        async with get_session(self._sessions) as db:
            total = int((await db.execute(
                select(func.count()).select_from(ApprovalRequest).where(*filters)
            )).scalar_one())
            result = await db.execute(
                select(ApprovalRequest)
                .where(*filters)
                .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            requests = list(result.scalars().all())

        return ApprovalListResponse(
            requests=[to_response(r) for r in requests],
            total=total,
            page=page,
            page_size=page_size,
            has_more=page * page_size < total,
        )
