"""SQLModel database tables.

Tables:
- User / Project / ProjectMember: ownership and roles
- Product: catalog items the playbooks operate on
- Subscription / AiUsageEvent / TokenUsage: quota gate backing store
- PlaybookRun: one row per triggered preview/draft/apply operation
- PlaybookDraft: generated-but-not-applied fixes for a playbook + scope
- ApprovalRequest / GovernancePolicy: second-party sign-off
- ProjectIssue / ShareLink: read-only inputs of the Work Queue
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp. Timestamp columns are plain ``DateTime``."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Ownership
# =============================================================================

class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(unique=True, index=True)
    # Single-user emulation of EDITOR/VIEWER on owned projects
    account_role: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    user_id: str = Field(foreign_key="users.id", index=True, description="Owner")
    last_issues_computed_at: datetime | None = Field(default=None, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ProjectMember(SQLModel, table=True):
    __tablename__ = "project_members"
    __table_args__ = (
        Index("uq_project_members_project_user", "project_id", "user_id", unique=True),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    role: str = Field(default="VIEWER")  # ProjectRole values
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# =============================================================================
# Catalog
# =============================================================================

class Product(SQLModel, table=True):
    __tablename__ = "products"
    __table_args__ = (
        Index("ix_products_project_synced", "project_id", "last_synced_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    external_id: str = Field(index=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    seo_title: str | None = Field(default=None)
    seo_description: str | None = Field(default=None, sa_column=Column(Text))
    last_synced_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# =============================================================================
# Quota Gate backing store
# =============================================================================

class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="users.id", unique=True, index=True)
    plan: str = Field(default="free")
    status: str = Field(default="active")
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class AiUsageEvent(SQLModel, table=True):
    """One row per accounted AI suggestion."""

    __tablename__ = "ai_usage_events"
    __table_args__ = (
        Index("ix_ai_usage_user_project_action_created", "user_id", "project_id", "action", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    project_id: str = Field(index=True)
    action: str
    run_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class TokenUsage(SQLModel, table=True):
    __tablename__ = "token_usage"

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    amount: int
    source: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# =============================================================================
# Playbook runs and drafts
# =============================================================================

class PlaybookRun(SQLModel, table=True):
    """One triggered preview/draft/apply operation. Never deleted."""

    __tablename__ = "playbook_runs"
    __table_args__ = (
        Index("uq_playbook_runs_project_idempotency", "project_id", "idempotency_key", unique=True),
        Index("ix_playbook_runs_project_playbook_created", "project_id", "playbook_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    created_by_user_id: str = Field(foreign_key="users.id")
    playbook_id: str = Field(index=True)
    scope_id: str | None = Field(default=None)
    rules_hash: str | None = Field(default=None)
    idempotency_key: str
    run_type: str  # RunType values
    status: str = Field(default="QUEUED", index=True)  # RunStatus values
    meta: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    draft_id: str | None = Field(default=None)
    result_ref: str | None = Field(default=None)
    ai_used: bool = Field(default=False)

    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class PlaybookDraft(SQLModel, table=True):
    __tablename__ = "playbook_drafts"
    __table_args__ = (
        Index("ix_playbook_drafts_lookup", "project_id", "playbook_id", "scope_id", "rules_hash"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    playbook_id: str = Field(index=True)
    scope_id: str
    rules_hash: str
    rules: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default="PARTIAL")  # DraftStatus values

    affected_total: int = Field(default=0)
    draft_generated: int = Field(default=0)
    # [{"productId": ..., "field": ..., "value": ...}]
    items: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))

    created_by_user_id: str | None = Field(default=None)
    applied_at: datetime | None = Field(default=None, sa_type=DateTime)
    applied_by_user_id: str | None = Field(default=None)
    expires_at: datetime | None = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# =============================================================================
# Governance
# =============================================================================

_LIVE_APPROVAL = "status IN ('PENDING_APPROVAL', 'APPROVED')"


class ApprovalRequest(SQLModel, table=True):
    __tablename__ = "approval_requests"
    __table_args__ = (
        Index(
            "uq_approval_requests_live_resource",
            "project_id",
            "resource_type",
            "resource_id",
            unique=True,
            sqlite_where=text(f"consumed = 0 AND {_LIVE_APPROVAL}"),
            postgresql_where=text(f"consumed = false AND {_LIVE_APPROVAL}"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    resource_type: str  # ApprovalResourceType values
    resource_id: str = Field(index=True)
    status: str = Field(default="PENDING_APPROVAL")  # ApprovalStatus values

    requested_by_user_id: str
    requested_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    decided_by_user_id: str | None = Field(default=None)
    decided_at: datetime | None = Field(default=None, sa_type=DateTime)
    decision_reason: str | None = Field(default=None, sa_column=Column(Text))

    consumed: bool = Field(default=False)
    consumed_at: datetime | None = Field(default=None, sa_type=DateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class GovernancePolicy(SQLModel, table=True):
    __tablename__ = "governance_policies"

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", unique=True, index=True)
    require_approval_for_apply: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# =============================================================================
# Work Queue inputs
# =============================================================================

class ProjectIssue(SQLModel, table=True):
    """Raw issue signal written by the crawler."""

    __tablename__ = "project_issues"

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    title: str
    severity: str  # IssueSeverity values
    pillar_id: str | None = Field(default=None)
    category: str | None = Field(default=None)
    issue_type: str | None = Field(default=None)
    intent_type: str | None = Field(default=None)
    affected_products: list[str] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ShareLink(SQLModel, table=True):
    __tablename__ = "share_links"

    id: str = Field(default_factory=new_id, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    status: str = Field(default="ACTIVE")  # ShareLinkStatus values
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
