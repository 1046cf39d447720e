"""Versioned prompt templates rendered with a small mustache subset.

Supported syntax:
- ``{{name}}`` substitution (missing variables render as empty strings)
- ``{{#flag}}...{{/flag}}`` kept when ``flag`` is truthy
- ``{{^flag}}...{{/flag}}`` kept when ``flag`` is falsy
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Any, Optional

_SECTION_RE = re.compile(r"\{\{([#^])(\w+)\}\}(.*?)\{\{/\2\}\}", re.DOTALL)
_VAR_RE = re.compile(r"\{\{(\w+)\}\}")


class PromptNotFoundError(KeyError):
    pass


@dataclass(slots=True, frozen=True)
class PromptTemplate:
    key: str
    version: int
    name: str
    description: str
    template: str


def render_template(template: str, variables: dict[str, Any]) -> str:
    def _section(match: re.Match) -> str:
        kind, name, body = match.group(1), match.group(2), match.group(3)
        enabled = bool(variables.get(name))
        return body if enabled == (kind == "#") else ""

    previous = None
    rendered = template
    while previous != rendered:  # sections may nest
        previous = rendered
        rendered = _SECTION_RE.sub(_section, rendered)

    def _var(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _VAR_RE.sub(_var, rendered)


class PromptLibrary:
    def __init__(self) -> None:
        self._prompts: dict[tuple[str, int], PromptTemplate] = {}
        self._lock = threading.Lock()

    def register(self, prompt: PromptTemplate) -> None:
        with self._lock:
            self._prompts[(prompt.key, prompt.version)] = prompt

    def get(self, key: str, version: Optional[int] = None) -> PromptTemplate:
        with self._lock:
            if version is not None:
                prompt = self._prompts.get((key, version))
            else:
                matching = [p for (k, _), p in self._prompts.items() if k == key]
                prompt = max(matching, key=lambda p: p.version) if matching else None
        if prompt is None:
            raise PromptNotFoundError(f"Prompt not found: {key}" + (f" v{version}" if version else ""))
        return prompt

    def render(self, key: str, variables: dict[str, Any], version: Optional[int] = None) -> str:
        return render_template(self.get(key, version).template, variables)


def parse_prompt_version(value: str | None) -> Optional[int]:
    """``"v2"`` -> 2; anything unparsable selects the latest version."""
    if not value:
        return None
    digits = value.lower().lstrip("v")
    return int(digits) if digits.isdigit() else None


CURATED_COLLECTIONS_PROMPT = PromptTemplate(
    key="curated_collections",
    version=1,
    name="Curated Collections",
    description="Lifestyle-first product collections for discovery surfaces",
    template="""You are Gifter's Lead Curator. Your job is to organize products into compelling, high-intent stories that feel editorial and premium.

Context:
- Date: {{date}}
- Season/Event: {{season}}
{{#isCluster}}
- Source: a pre-clustered group of items found to be semantically related.
- Goal: curate the BEST {{productCount}} items from this cluster into a cohesive collection.
{{/isCluster}}
{{^isCluster}}
- Product Pool: {{productCount}} available
{{/isCluster}}

Task:
Create {{#isCluster}}1{{/isCluster}}{{^isCluster}}3-5{{/isCluster}} collection(s). Avoid generic titles like "Gifts for Her". Each collection must have a distinct persona or mood.

Response JSON Format:
{
  "collections": [
    {
      "key": "<unique-slug>",
      "title": "<Evocative Name>",
      "subtitle": "<Punchy tagline showing the why>",
      "description": "<1-sentence lifestyle hook>",
      "filters": {
        "productIds": ["<id1>", "<id2>"],
        "maxItems": {{maxItems}}
      },
      "editorial_vibe": "<one of: minimalist, cozy, luxurious, high-tech, playful, sophisticated, rustic, modern, vintage, bohemian>"
    }
  ]
}

Guidelines:
1. Only use product ids that appear in the provided list.
2. Align with the current season ({{season}}).
3. The description focuses on the feeling of receiving the gift.""",
)

PRODUCT_ENRICHMENT_PROMPT = PromptTemplate(
    key="product_enrichment",
    version=1,
    name="Product Enrichment",
    description="Gift tags, occasion fit and style tags for a mirrored product",
    template="""Analyze the following product and provide enrichment data in JSON format.

Product: {{title}}
Brand: {{brandName}}
Description: {{description}}
Price: {{price}} {{currency}}

Return JSON with:
- giftTags: string[] (e.g. "luxury", "sustainable", "handcrafted", "tech", "beauty")
- occasionFit: string[] (e.g. "birthday", "wedding", "housewarming", "christmas")
- styleTags: string[] (e.g. "modern", "rustic", "minimalist", "bold")
- shortDescription: string (concise 1-sentence summary)""",
)


def build_default_library() -> PromptLibrary:
    library = PromptLibrary()
    library.register(CURATED_COLLECTIONS_PROMPT)
    library.register(PRODUCT_ENRICHMENT_PROMPT)
    return library


DEFAULT_PROMPTS = build_default_library()

__all__ = [
    "PromptTemplate",
    "PromptLibrary",
    "PromptNotFoundError",
    "render_template",
    "parse_prompt_version",
    "build_default_library",
    "DEFAULT_PROMPTS",
]
