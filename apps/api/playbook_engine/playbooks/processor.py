"""Run processor.

Moves a PlaybookRun QUEUED → RUNNING → {SUCCEEDED, FAILED, STALE}. The claim
is a conditional update, so a second delivery of the same run finds it no
longer QUEUED and does nothing. Errors are recorded on the run and re-raised
to the delivery mechanism; the processor never retries a run.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update

from playbook_engine.database.models import PlaybookRun, utcnow
from playbook_engine.database.session import SessionFactory, get_session
from playbook_engine.errors import STALE_ERROR_CODES, error_code_of
from playbook_engine.playbooks.drafts import DraftService
from playbook_engine.playbooks.service import AutomationPlaybooksService, run_to_response
from playbook_engine.schemas import RunResponse, RunStatus, RunType


logger = logging.getLogger(__name__)


class RunProcessor:
    def __init__(
        self,
        sessions: SessionFactory,
        playbooks: AutomationPlaybooksService,
        drafts: DraftService,
    ):
        self._sessions = sessions
        self.playbooks = playbooks
        self.drafts = drafts

    async def claim(self, run_id: str) -> bool:
        """QUEUED → RUNNING. False when another delivery got there first."""
        async with get_session(self._sessions) as db:
            result = await db.execute(
                update(PlaybookRun)
                .where(PlaybookRun.id == run_id)
                .where(PlaybookRun.status == RunStatus.QUEUED.value)
                .values(status=RunStatus.RUNNING.value, updated_at=utcnow())
            )
            return result.rowcount == 1

    async def process(self, run_id: str) -> RunResponse | None:
        """Process a run once. Returns None when the run was not claimable."""
        if not await self.claim(run_id):
            logger.info(f"Run {run_id} is not QUEUED, skipping duplicate delivery")
            return None

        async with get_session(self._sessions) as db:
            run = await db.get(PlaybookRun, run_id)

        run_type = RunType(run.run_type)
        logger.info(f"Run {run_id} claimed: {run_type.value} {run.playbook_id} on project {run.project_id}")

        try:
            changes = await self._dispatch(run, run_type)
        except Exception as e:
            code = error_code_of(e)
            status = RunStatus.STALE if code in STALE_ERROR_CODES else RunStatus.FAILED
            await self._finish(
                run_id,
                status=status.value,
                ai_used=False if run_type == RunType.APPLY else run.ai_used,
                error_code=code,
                error_message=str(e) or type(e).__name__,
            )
            logger.error(f"Run {run_id} {status.value} with {code}: {e}")
            raise

        finished = await self._finish(run_id, status=RunStatus.SUCCEEDED.value, **changes)
        logger.info(f"Run {run_id} succeeded")
        return finished

    async def _dispatch(self, run: PlaybookRun, run_type: RunType) -> dict[str, Any]:
        if run_type == RunType.PREVIEW_GENERATE:
            draft = await self.drafts.generate_preview(run)
            return {"draft_id": draft.id, "result_ref": draft.id, "ai_used": True}

        if run_type == RunType.DRAFT_GENERATE:
            draft = await self.drafts.generate_draft(run)
            return {"draft_id": draft.id, "result_ref": draft.id, "ai_used": True}

        result = await self.playbooks.apply_playbook(
            run.project_id,
            run.playbook_id,
            run.created_by_user_id,
            run.scope_id,
            rules_hash=run.rules_hash,
        )
        meta = dict(run.meta or {})
        meta["applyResult"] = result.model_dump(mode="json", by_alias=True)
        return {
            "result_ref": f"{run.project_id}:{run.playbook_id}:{run.scope_id}",
            "ai_used": False,
            "meta": meta,
        }

    async def _finish(self, run_id: str, **changes: Any) -> RunResponse:
        async with get_session(self._sessions) as db:
            run = await db.get(PlaybookRun, run_id)
            for key, value in changes.items():
                setattr(run, key, value)
            run.updated_at = utcnow()
        return run_to_response(run)
