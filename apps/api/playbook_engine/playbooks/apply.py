"""LangGraph apply loop.

Graph structure:
START → revalidate_scope → check_plan → check_quota → prepare → apply_item → record_usage → END
                              ↓              ↓                      ↺ (one product per step)
                         (empty scope)  (limit reached) ───────────→ record_usage

Products are processed one at a time in scope order. The loop stops at the
first ERROR, daily-limit or exhausted rate-limit outcome; everything attempted
up to that point is reported in the result.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Literal, TypedDict

from langgraph.graph import END, StateGraph
from pydantic.alias_generators import to_camel

from playbook_engine.billing.quota import QuotaGate
from playbook_engine.config import Settings, get_settings
from playbook_engine.errors import EntitlementError, ScopeConflictError
from playbook_engine.playbooks.fixers import ProductFixer
from playbook_engine.playbooks.scope import ResolvedScope, ScopeResolver
from playbook_engine.schemas import (
    ApplyItemResult,
    ApplyItemStatus,
    FailureReason,
    FixOutcome,
    FixOutcomeKind,
    PlaybookApplyResult,
    PlaybookId,
)


logger = logging.getLogger(__name__)

# Graph steps outside the per-product loop
FIXED_STEPS = 8


# =============================================================================
# State Definition
# =============================================================================

class ApplyState(TypedDict, total=False):
    """State for one apply pass.

    Attributes:
        project_id / playbook_id / user_id: what is applied, by whom
        owner_id: project owner, charged for token usage
        scope_id: scopeId the caller was issued by the estimate
        rules_hash: rulesHash the caller expects the draft to carry
        scope: live scope resolved at the start of the pass
        fixer: per-product fix collaborator
        index: position of the next product in ``scope.product_ids``
        remaining: daily AI budget left for this pass, None when unlimited
        done: set once the loop must not attempt another product
        result: accumulated apply result
    """

    project_id: str
    playbook_id: PlaybookId
    user_id: str
    owner_id: str
    scope_id: str
    rules_hash: str | None
    scope: ResolvedScope
    fixer: ProductFixer
    index: int
    remaining: int | None
    done: bool
    result: PlaybookApplyResult


class ApplyExecutor:
    """Runs the bounded, quota-gated apply loop for one playbook."""

    def __init__(
        self,
        scopes: ScopeResolver,
        quota: QuotaGate,
        settings: Settings | None = None,
    ):
        self.scopes = scopes
        self.quota = quota
        self.settings = settings or get_settings()
        self.graph = self._build_graph()

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(
        self,
        project_id: str,
        owner_id: str,
        playbook_id: PlaybookId,
        user_id: str,
        scope_id: str,
        fixer: ProductFixer,
        rules_hash: str | None = None,
    ) -> PlaybookApplyResult:
        scope = await self.scopes.resolve(project_id, playbook_id)

        state = ApplyState(
            project_id=project_id,
            playbook_id=playbook_id,
            user_id=user_id,
            owner_id=owner_id,
            scope_id=scope_id,
            rules_hash=rules_hash,
            scope=scope,
            fixer=fixer,
            index=0,
            remaining=None,
            done=False,
            result=PlaybookApplyResult(
                project_id=project_id,
                playbook_id=playbook_id,
                total_affected=scope.count,
            ),
        )

        final = await self.graph.ainvoke(
            state,
            config={"recursion_limit": scope.count + FIXED_STEPS},
        )
        return final["result"]

    # =========================================================================
    # Graph
    # =========================================================================

    def _build_graph(self):
        workflow = StateGraph(ApplyState)

        workflow.add_node("revalidate_scope", self.revalidate_scope_node)
        workflow.add_node("check_plan", self.check_plan_node)
        workflow.add_node("check_quota", self.check_quota_node)
        workflow.add_node("prepare", self.prepare_node)
        workflow.add_node("apply_item", self.apply_item_node)
        workflow.add_node("record_usage", self.record_usage_node)

        workflow.set_entry_point("revalidate_scope")
        workflow.add_edge("revalidate_scope", "check_plan")
        workflow.add_conditional_edges(
            "check_plan",
            self.route_after_plan,
            {"check_quota": "check_quota", "end": END},
        )
        workflow.add_conditional_edges(
            "check_quota",
            self.route_after_quota,
            {"prepare": "prepare", "record_usage": "record_usage"},
        )
        workflow.add_edge("prepare", "apply_item")
        workflow.add_conditional_edges(
            "apply_item",
            self.route_after_item,
            {"apply_item": "apply_item", "record_usage": "record_usage"},
        )
        workflow.add_edge("record_usage", END)

        return workflow.compile()

    # =========================================================================
    # Nodes
    # =========================================================================

    async def revalidate_scope_node(self, state: ApplyState) -> dict:
        scope = state["scope"]
        if scope.scope_id != state["scope_id"]:
            logger.info(
                f"Scope conflict on {state['project_id']}/{state['playbook_id'].value}: "
                f"expected {scope.scope_id}, got {state['scope_id']}"
            )
            raise ScopeConflictError(scope.scope_id, state["scope_id"])

        logger.info(
            f"apply.started project={state['project_id']} playbook={state['playbook_id'].value} "
            f"user={state['user_id']} affected={scope.count}"
        )
        return {"result": state["result"]}

    async def check_plan_node(self, state: ApplyState) -> dict:
        plan = await self.quota.get_plan(state["user_id"])
        if not plan.limits.automation_playbooks:
            raise EntitlementError(
                "Automation playbooks are not available on your current plan.",
                plan=plan.id,
            )
        return {"result": state["result"]}

    async def check_quota_node(self, state: ApplyState) -> dict:
        allowance = await self.quota.daily_allowance(state["user_id"], state["project_id"])
        if allowance.unlimited:
            return {"result": state["result"], "remaining": None}
        if allowance.remaining > 0:
            return {"result": state["result"], "remaining": allowance.remaining}

        result = state["result"]
        result.limit_reached = True
        result.stopped = True
        result.failure_reason = FailureReason.LIMIT_REACHED
        logger.info(f"Daily AI limit already reached for user {state['user_id']}, nothing applied")
        return {"result": result, "done": True}

    async def prepare_node(self, state: ApplyState) -> dict:
        await state["fixer"].prepare(
            state["project_id"],
            state["playbook_id"],
            state["scope_id"],
            state.get("rules_hash"),
        )
        return {"result": state["result"]}

    async def apply_item_node(self, state: ApplyState) -> dict:
        """Process the product at ``index`` and decide whether the loop continues."""
        result = state["result"]
        product_id = state["scope"].product_ids[state["index"]]

        remaining = state.get("remaining")
        if remaining is not None and remaining <= 0:
            self._stop_on_limit(result, product_id, "Daily AI limit reached before this product.")
            return {"result": result, "index": state["index"] + 1, "done": True}

        # Every attempt spends one unit of the daily budget
        if remaining is not None:
            remaining -= 1
        result.attempted += 1
        outcome = await self._fix_with_retries(state, product_id)
        done = False

        if outcome.kind == FixOutcomeKind.UPDATED:
            result.updated += 1
            result.results.append(
                ApplyItemResult(
                    product_id=product_id,
                    status=ApplyItemStatus.UPDATED,
                    message="Updated",
                    updated_fields={to_camel(outcome.field): True} if outcome.field else None,
                )
            )
        elif outcome.kind == FixOutcomeKind.SKIPPED:
            result.skipped += 1
            result.results.append(
                ApplyItemResult(
                    product_id=product_id,
                    status=ApplyItemStatus.SKIPPED,
                    message=outcome.reason or "Skipped",
                )
            )
        elif outcome.kind == FixOutcomeKind.DAILY_LIMIT:
            self._stop_on_limit(result, product_id, outcome.message or "Daily AI limit reached.")
            done = True
        elif outcome.kind == FixOutcomeKind.RATE_LIMITED:
            self._stop_on_failure(
                result,
                product_id,
                FailureReason.RATE_LIMIT,
                outcome.message or "Rate limited by the provider; retries exhausted.",
            )
            done = True
        else:
            self._stop_on_failure(
                result,
                product_id,
                FailureReason.ERROR,
                outcome.message or "Unexpected error while fixing product.",
            )
            done = True

        return {"result": result, "index": state["index"] + 1, "remaining": remaining, "done": done}

    async def record_usage_node(self, state: ApplyState) -> dict:
        result = state["result"]
        tokens = result.updated * self.settings.estimated_tokens_per_call
        if tokens > 0:
            await self.quota.log_tokens(
                state["owner_id"],
                tokens,
                f"automation_playbook:{state['playbook_id'].value}",
            )

        logger.info(
            f"apply.completed project={state['project_id']} playbook={state['playbook_id'].value} "
            f"attempted={result.attempted} updated={result.updated} skipped={result.skipped} "
            f"stopped={result.stopped} reason={result.failure_reason.value if result.failure_reason else None}"
        )
        return {"result": state["result"]}

    # =========================================================================
    # Routing
    # =========================================================================

    def route_after_plan(self, state: ApplyState) -> Literal["check_quota", "end"]:
        return "check_quota" if state["scope"].count > 0 else "end"

    def route_after_quota(self, state: ApplyState) -> Literal["prepare", "record_usage"]:
        return "record_usage" if state.get("done") else "prepare"

    def route_after_item(self, state: ApplyState) -> Literal["apply_item", "record_usage"]:
        if state.get("done") or state["index"] >= state["scope"].count:
            return "record_usage"
        return "apply_item"

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _fix_with_retries(self, state: ApplyState, product_id: str) -> FixOutcome:
        retries = self.settings.apply_rate_limit_retries
        backoff = self.settings.apply_rate_limit_backoff_seconds

        attempt = 0
        while True:
            try:
                outcome = await state["fixer"].fix(
                    state["user_id"],
                    product_id,
                    state["playbook_id"].value,
                )
            except Exception as e:
                logger.exception(f"Fix failed for product {product_id}")
                return FixOutcome(kind=FixOutcomeKind.ERROR, message=str(e) or type(e).__name__)

            if outcome.kind != FixOutcomeKind.RATE_LIMITED or attempt >= retries:
                return outcome

            attempt += 1
            logger.warning(f"Rate limited on product {product_id}, retry {attempt}/{retries}")
            await asyncio.sleep(backoff * attempt)

    @staticmethod
    def _stop_on_limit(result: PlaybookApplyResult, product_id: str, message: str) -> None:
        result.results.append(
            ApplyItemResult(product_id=product_id, status=ApplyItemStatus.LIMIT_REACHED, message=message)
        )
        result.limit_reached = True
        result.stopped = True
        result.stopped_at_item_id = product_id
        result.failure_reason = FailureReason.LIMIT_REACHED

    @staticmethod
    def _stop_on_failure(
        result: PlaybookApplyResult,
        product_id: str,
        reason: FailureReason,
        message: str,
    ) -> None:
        result.results.append(
            ApplyItemResult(product_id=product_id, status=ApplyItemStatus.FAILED, message=message)
        )
        result.stopped = True
        result.stopped_at_item_id = product_id
        result.failure_reason = reason
