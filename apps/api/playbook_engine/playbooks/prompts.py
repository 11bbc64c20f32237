"""Prompt templates for SEO field suggestions."""

from __future__ import annotations

# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are an e-commerce SEO copywriter. Your role is to write
search metadata for product pages.

Guidelines:
- Describe the product accurately; never invent features or claims
- Use natural language, no keyword stuffing, no ALL CAPS
- Respond with the requested text only: no quotes, labels or explanations"""


# =============================================================================
# Field Prompts
# =============================================================================

SEO_TITLE_PROMPT = """Write an SEO title for this product.

## Product
Title: {title}
Description: {description}

## Instructions
- At most 60 characters
- Lead with what the product is"""


SEO_DESCRIPTION_PROMPT = """Write an SEO meta description for this product.

## Product
Title: {title}
Description: {description}

## Instructions
- Between 120 and 155 characters
- One or two complete sentences"""


def format_field_prompt(field: str, title: str, description: str | None) -> str:
    """Format the prompt for the product field being filled in."""
    template = SEO_TITLE_PROMPT if field == "seo_title" else SEO_DESCRIPTION_PROMPT
    return template.format(title=title, description=(description or "(none)")[:2000])
