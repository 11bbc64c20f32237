"""Read-only project signals consumed by the Work Queue."""

from __future__ import annotations

from typing import Protocol

from sqlmodel import select

from playbook_engine.database.models import ProjectIssue, ShareLink
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.schemas import Issue, IssueSeverity, ShareLinkStatus


class IssueSource(Protocol):
    async def list_issues(self, project_id: str) -> list[Issue]:
        ...


class DatabaseIssueSource:
    """Issues as last written by the crawler."""

    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    async def list_issues(self, project_id: str) -> list[Issue]:
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(ProjectIssue)
                .where(ProjectIssue.project_id == project_id)
                .order_by(ProjectIssue.created_at, ProjectIssue.id)
            )
            rows = list(result.scalars().all())

        return [
            Issue(
                id=row.id,
                title=row.title,
                severity=IssueSeverity(row.severity),
                pillar_id=row.pillar_id,
                category=row.category,
                issue_type=row.issue_type,
                intent_type=row.intent_type,
                affected_products=row.affected_products or [],
            )
            for row in rows
        ]


class ShareLinkReader:
    def __init__(self, sessions: SessionFactory):
        self._sessions = sessions

    async def list_share_links(self, project_id: str) -> list[ShareLink]:
        """Newest first."""
        async with get_session(self._sessions) as db:
            result = await db.execute(
                select(ShareLink)
                .where(ShareLink.project_id == project_id)
                .order_by(ShareLink.created_at.desc(), ShareLink.id)
            )
            return list(result.scalars().all())


def share_link_status(links: list[ShareLink]) -> str:
    """Summary status: ACTIVE if any is active, REVOKED if all are, else EXPIRED; NONE without links."""
    if not links:
        return "NONE"
    statuses = {link.status for link in links}
    if ShareLinkStatus.ACTIVE.value in statuses:
        return ShareLinkStatus.ACTIVE.value
    if statuses == {ShareLinkStatus.REVOKED.value}:
        return ShareLinkStatus.REVOKED.value
    return ShareLinkStatus.EXPIRED.value
