"""Static ranking tables for the Work Queue."""

from __future__ import annotations

from playbook_engine.schemas import ActionKey, AiUsage, Health, QueueState


# Lower sorts first
IMPACT_RANKS: dict[ActionKey, int] = {
    ActionKey.FIX_MISSING_METADATA: 100,
    ActionKey.RESOLVE_TECHNICAL_ISSUES: 200,
    ActionKey.IMPROVE_SEARCH_INTENT: 300,
    ActionKey.OPTIMIZE_CONTENT: 400,
    ActionKey.SHARE_LINK_GOVERNANCE: 900,
}

STATE_PRIORITY: dict[QueueState, int] = {
    QueueState.PENDING_APPROVAL: 1,
    QueueState.APPROVED: 2,
    QueueState.DRAFTS_READY: 3,
    QueueState.PREVIEWED: 4,
    QueueState.FAILED: 5,
    QueueState.BLOCKED: 5,
    QueueState.NEW: 6,
    QueueState.APPLIED: 7,
}

HEALTH_PRIORITY: dict[Health, int] = {
    Health.CRITICAL: 1,
    Health.NEEDS_ATTENTION: 2,
    Health.HEALTHY: 3,
}

ACTION_LABELS: dict[ActionKey, str] = {
    ActionKey.FIX_MISSING_METADATA: "Fix missing metadata",
    ActionKey.RESOLVE_TECHNICAL_ISSUES: "Resolve technical issues",
    ActionKey.IMPROVE_SEARCH_INTENT: "Improve search intent fit",
    ActionKey.OPTIMIZE_CONTENT: "Optimize content",
    ActionKey.SHARE_LINK_GOVERNANCE: "Review share links",
}

AI_DISCLOSURE_TEXT: dict[AiUsage, str] = {
    AiUsage.NONE: "No AI is used for this action.",
    AiUsage.DRAFTS_ONLY: "AI is used to generate drafts only. Applying drafts makes no AI calls.",
}

# Issue grouping, checked in this order: pillar, category, then heuristics
PILLAR_ACTIONS: dict[str, ActionKey] = {
    "metadata_snippet_quality": ActionKey.FIX_MISSING_METADATA,
    "technical_indexability": ActionKey.RESOLVE_TECHNICAL_ISSUES,
    "search_intent_fit": ActionKey.IMPROVE_SEARCH_INTENT,
    "content_commerce_signals": ActionKey.OPTIMIZE_CONTENT,
}

CATEGORY_ACTIONS: dict[str, ActionKey] = {
    "metadata": ActionKey.FIX_MISSING_METADATA,
    "technical": ActionKey.RESOLVE_TECHNICAL_ISSUES,
    "search_intent": ActionKey.IMPROVE_SEARCH_INTENT,
    "content_entity": ActionKey.OPTIMIZE_CONTENT,
}

DEFAULT_ACTION = ActionKey.OPTIMIZE_CONTENT

SCOPE_PREVIEW_LIMIT = 5

GEO_EXPORT_PREVIEW = "GEO Report Export"
