"""
Content-analysis service.

One typed request contract (`AnalysisRequest`) and one prompt renderer
(`render_prompt`) shared by every analyzer implementation. Rendering refuses
to produce a prompt with a missing or empty placeholder, so a provider can
never be fed blank context.

Analyzer failures and unparseable answers become `AnalysisResult.empty()`:
zero dishes, zero signal, never a run error.
"""

from __future__ import annotations

import json
import string
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import anthropic
from pydantic import BaseModel, Field, ValidationError

from discovery_engine.config import Settings
from discovery_engine.domain.errors import ContractViolation, MalformedAnalysisError
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

VENUE_ANALYSIS_PROMPT = """You are reviewing a food delivery listing for products of a specific brand.

Venue: {venue_name}
Platform: {platform} ({country})
URL: {venue_url}
Products of interest: {product_terms}

Page content:
<<<
{page_text}
>>>

Return ONLY a JSON object with these keys:
  "name": venue name as shown on the page,
  "description": one-sentence description of the venue,
  "price": typical price of a matching dish or null,
  "product_guess": which product of interest is served, or null,
  "signals": {{"brand_mentioned": bool, "menu_item_count": int}},
  "dishes": [{{"name": str, "description": str, "price": str or null, "product_guess": str or null}}]
"""


class AnalysisRequest(BaseModel):
    venue_url: str
    venue_name: str = ""
    platform: str
    country: str = ""
    page_text: str
    product_terms: List[str] = Field(default_factory=list)

    def prompt_variables(self) -> Dict[str, str]:
        return {
            "venue_url": self.venue_url,
            "venue_name": self.venue_name or "unknown",
            "platform": self.platform,
            "country": self.country or "unknown",
            "page_text": self.page_text,
            "product_terms": ", ".join(self.product_terms),
        }


class ExtractedDish(BaseModel):
    name: str
    description: str = ""
    price: Optional[str] = None
    product_guess: Optional[str] = None


class AnalysisResult(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[str] = None
    product_guess: Optional[str] = None
    signals: Dict[str, Any] = Field(default_factory=dict)
    dishes: List[ExtractedDish] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "AnalysisResult":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not (self.name or self.dishes or self.signals)


def render_prompt(template: str, request: AnalysisRequest) -> str:
    """
    Fill every `{placeholder}` in `template` from the request.

    Raises ContractViolation when the template names a variable the request
    does not provide, or when a provided value is blank.
    """
    variables = request.prompt_variables()
    fields = {name for _, name, _, _ in string.Formatter().parse(template) if name}
    missing = sorted(fields - set(variables))
    if missing:
        raise ContractViolation(f"Prompt placeholders without a value: {', '.join(missing)}")
    blank = sorted(name for name in fields if not variables[name].strip())
    if blank:
        raise ContractViolation(f"Prompt placeholders with empty values: {', '.join(blank)}")
    return template.format(**variables)


def parse_analysis(text: str) -> AnalysisResult:
    """Parse a model answer into an AnalysisResult, tolerating code fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[-1]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()
    if cleaned.startswith("json"):
        cleaned = cleaned[4:].strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise MalformedAnalysisError(f"analysis is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedAnalysisError("analysis JSON is not an object")
    try:
        return AnalysisResult.model_validate(payload)
    except ValidationError as exc:
        raise MalformedAnalysisError(f"analysis JSON has the wrong shape: {exc}") from exc


@runtime_checkable
class ContentAnalyzer(Protocol):
    async def analyze(self, request: AnalysisRequest) -> AnalysisResult: ...


class AnthropicContentAnalyzer:
    provider = "claude"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "claude-3-5-haiku-latest",
        max_tokens: int = 2048,
        max_page_chars: int = 20_000,
        template: str = VENUE_ANALYSIS_PROMPT,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.max_page_chars = max_page_chars
        self.template = template
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnthropicContentAnalyzer":
        return cls(
            settings.anthropic_api_key,
            model=settings.anthropic_model,
            max_tokens=settings.analysis_max_tokens,
            max_page_chars=settings.analysis_max_page_chars,
        )

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        trimmed = request.model_copy(update={"page_text": request.page_text[: self.max_page_chars]})
        prompt = render_prompt(self.template, trimmed)
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
            text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
            return parse_analysis(text)
        except MalformedAnalysisError as exc:
            log.warning("Malformed analysis treated as empty", extra={"url": request.venue_url, "error": str(exc)})
        except anthropic.APIError as exc:
            log.error("Analysis call failed", extra={"url": request.venue_url, "error": str(exc)})
        return AnalysisResult.empty()


__all__ = [
    "AnalysisRequest",
    "AnalysisResult",
    "AnthropicContentAnalyzer",
    "ContentAnalyzer",
    "ExtractedDish",
    "VENUE_ANALYSIS_PROMPT",
    "parse_analysis",
    "render_prompt",
]
