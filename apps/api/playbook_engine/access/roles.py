"""Project role resolution and capabilities.

The project owner is OWNER (a user-level ``account_role`` overrides this to
emulate EDITOR/VIEWER on single-user projects). Other users get the role of
their ProjectMember row; anyone else has no access at all.
"""

from __future__ import annotations

from pydantic import BaseModel
from sqlalchemy import func
from sqlmodel import select

from playbook_engine.database.models import Project, ProjectMember, User
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import AuthorizationError, NotFoundError
from playbook_engine.schemas import ProjectRole, ViewerCapabilities


class RoleCapabilities(BaseModel):
    can_view: bool
    can_request_approval: bool
    can_approve: bool
    can_apply: bool
    can_generate_drafts: bool
    can_modify_settings: bool

    def for_viewer(self) -> ViewerCapabilities:
        return ViewerCapabilities(
            can_generate_drafts=self.can_generate_drafts,
            can_apply=self.can_apply,
            can_approve=self.can_approve,
            can_request_approval=self.can_request_approval,
        )


CAPABILITIES: dict[ProjectRole, RoleCapabilities] = {
    ProjectRole.OWNER: RoleCapabilities(
        can_view=True,
        can_request_approval=True,
        can_approve=True,
        can_apply=True,
        can_generate_drafts=True,
        can_modify_settings=True,
    ),
    ProjectRole.EDITOR: RoleCapabilities(
        can_view=True,
        can_request_approval=True,
        can_approve=False,
        can_apply=True,
        can_generate_drafts=True,
        can_modify_settings=False,
    ),
    ProjectRole.VIEWER: RoleCapabilities(
        can_view=True,
        can_request_approval=True,
        can_approve=False,
        can_apply=False,
        can_generate_drafts=False,
        can_modify_settings=False,
    ),
}


def get_capabilities(role: ProjectRole) -> RoleCapabilities:
    return CAPABILITIES[role]


class RoleResolver:
    """Capability resolver consumed by the playbook, approval and queue services."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    async def get_project(self, project_id: str) -> Project:
        async with get_session(self._sessions) as db:
            project = await db.get(Project, project_id)
        if not project:
            raise NotFoundError("Project not found")
        return project

    async def resolve_role(self, project_id: str, user_id: str) -> ProjectRole:
        """Effective role of ``user_id`` on the project.

        Raises AuthorizationError for users that are neither owner nor member.
        """
        project = await self.get_project(project_id)

        async with get_session(self._sessions) as db:
            if project.user_id == user_id:
                user = await db.get(User, user_id)
                if user and user.account_role:
                    return ProjectRole(user.account_role)
                return ProjectRole.OWNER

            result = await db.execute(
                select(ProjectMember)
                .where(ProjectMember.project_id == project_id)
                .where(ProjectMember.user_id == user_id)
            )
            member = result.scalar_one_or_none()

        if not member:
            raise AuthorizationError("You do not have access to this project")
        return ProjectRole(member.role)

    async def capabilities(self, project_id: str, user_id: str) -> RoleCapabilities:
        return get_capabilities(await self.resolve_role(project_id, user_id))

    async def assert_project_access(self, project_id: str, user_id: str) -> ProjectRole:
        return await self.resolve_role(project_id, user_id)

    async def require(self, project_id: str, user_id: str, capability: str, message: str) -> ProjectRole:
        """Resolve the role and fail unless it grants ``capability``."""
        role = await self.resolve_role(project_id, user_id)
        if not getattr(get_capabilities(role), capability):
            raise AuthorizationError(message, role=role.value)
        return role

    async def is_multi_user_project(self, project_id: str) -> bool:
        project = await self.get_project(project_id)
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(func.count())
                .select_from(ProjectMember)
                .where(ProjectMember.project_id == project_id)
                .where(ProjectMember.user_id != project.user_id)
            )
            others = int(result.scalar_one())
        return others > 0
