"""Service wiring shared by the API and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from playbook_engine.access.roles import RoleResolver
from playbook_engine.approvals.governance import GovernanceService
from playbook_engine.approvals.service import ApprovalService
from playbook_engine.billing.quota import QuotaGate
from playbook_engine.config import Settings, get_settings
from playbook_engine.database.session import SessionFactory, get_session_factory
from playbook_engine.issues.source import DatabaseIssueSource, IssueSource, ShareLinkReader
from playbook_engine.playbooks.drafts import DraftService
from playbook_engine.playbooks.fixers import DraftFixer, HttpFixer, ProductFixer
from playbook_engine.playbooks.generation import LLMSuggestionGenerator, SuggestionGenerator
from playbook_engine.playbooks.processor import RunProcessor
from playbook_engine.playbooks.scope import ScopeResolver
from playbook_engine.playbooks.service import AutomationPlaybooksService
from playbook_engine.playbooks.worker import RunWorker
from playbook_engine.work_queue.service import WorkQueueService


@dataclass
class Services:
    settings: Settings
    sessions: SessionFactory
    roles: RoleResolver
    quota: QuotaGate
    scopes: ScopeResolver
    drafts: DraftService
    approvals: ApprovalService
    governance: GovernanceService
    playbooks: AutomationPlaybooksService
    processor: RunProcessor
    work_queue: WorkQueueService
    generator: SuggestionGenerator
    # Long-lived clients closed on shutdown
    resources: list = field(default_factory=list)

    def worker(self) -> RunWorker:
        return RunWorker(self.sessions, self.processor, self.settings)

    async def close(self) -> None:
        for resource in [self.generator, *self.resources]:
            close = getattr(resource, "close", None)
            if close:
                await close()


def default_fixer_factory(
    settings: Settings,
    sessions: SessionFactory,
) -> tuple[Callable[[], ProductFixer], HttpFixer | None]:
    """Fixer factory plus the shared HTTP fixer it hands out, if any."""
    if settings.fix_provider == "http":
        fixer = HttpFixer(settings)
        return (lambda: fixer), fixer
    return (lambda: DraftFixer(sessions)), None


def build_services(
    settings: Settings | None = None,
    sessions: SessionFactory | None = None,
    generator: SuggestionGenerator | None = None,
    fixer_factory: Callable[[], ProductFixer] | None = None,
    issues: IssueSource | None = None,
) -> Services:
    settings = settings or get_settings()
    sessions = sessions or get_session_factory()
    generator = generator or LLMSuggestionGenerator(settings=settings)
    resources = []
    if fixer_factory is None:
        fixer_factory, shared_fixer = default_fixer_factory(settings, sessions)
        if shared_fixer:
            resources.append(shared_fixer)

    roles = RoleResolver(sessions)
    quota = QuotaGate(sessions)
    scopes = ScopeResolver(sessions)
    drafts = DraftService(sessions, scopes, quota, generator, settings)
    approvals = ApprovalService(sessions, roles)
    governance = GovernanceService(sessions, roles)
    playbooks = AutomationPlaybooksService(
        sessions,
        roles,
        scopes,
        quota,
        drafts,
        approvals,
        governance,
        fixer_factory,
        settings,
    )
    processor = RunProcessor(sessions, playbooks, drafts)
    work_queue = WorkQueueService(
        sessions,
        roles,
        scopes,
        drafts,
        approvals,
        governance,
        issues or DatabaseIssueSource(sessions),
        ShareLinkReader(sessions),
        settings,
    )

    return Services(
        settings=settings,
        sessions=sessions,
        roles=roles,
        quota=quota,
        scopes=scopes,
        drafts=drafts,
        approvals=approvals,
        governance=governance,
        playbooks=playbooks,
        processor=processor,
        work_queue=work_queue,
        generator=generator,
        resources=resources,
    )
