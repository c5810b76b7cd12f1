#!/usr/bin/env python3
"""
AI-assisted page structure analysis.

Given a journal URL, the analyzer fetches and reduces the page, asks the AI
provider to classify it, and then either derives a selector recipe (article
list pages) or looks for a link to the real article list (everything else).

The outcome is one of three tagged results:

    Listing      the page lists papers; carries the SelectorRecipe
    Redirect     the page is not a list but links to one
    Unsupported  the page is not a list and no way forward was found

Transport failures surface as SourceUnreadable, provider failures or
unusable answers as AnalysisFailed (with a raw response excerpt in
``debug``).

analyze_descriptions() is the rss counterpart: it asks how a feed's item
descriptions embed metadata and scores the answer with rss_metadata.
The analyzer never writes to storage.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin

import yaml

from config import config, get_logger
from errors import AnalysisFailed, ContentFilterError, ValidationFailed
from extractor import SelectorRecipe
from llm_client import AICredentials, PROVIDER_OPENAI, chat_completion, system_credentials
from page_fetcher import PageFetcher, PageFetchResult
from rss_metadata import FIELDS, FORMATS, SOURCE_AI, build_config, score_config
from telemetry import init_telemetry, get_tracer, trace_span
from utils import normalize_url, validate_url

logger = get_logger("analyzer")
init_telemetry("paper-ingest-analyzer")
_tracer = get_tracer("analyzer")

PAGE_ARTICLE_LIST = "article_list"
PAGE_TYPES = ("article_list", "journal_home", "article_detail", "search_results", "other", "unknown")
# Page types worth asking for a link to the real listing
REDIRECTABLE_PAGE_TYPES = ("journal_home", "search_results", "other", "unknown")
DEBUG_EXCERPT_CHARS = 500
DESCRIPTION_SAMPLE_CHARS = 1500

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def load_prompts() -> Dict[str, str]:
    """Load analyzer prompts from prompt.yaml."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
    except OSError as e:
        logger.error(f"OS error reading prompt configuration file: {e}")
    return {}


def parse_json_response(raw: str) -> Dict[str, Any]:
    """Decode a JSON object from an AI reply, tolerating markdown fences and chatter."""
    text = (raw or "").strip()
    fenced = _FENCED_JSON.search(text)
    if fenced:
        text = fenced.group(1).strip()
    elif not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]
    try:
        data = json.loads(text)
    except ValueError as e:
        raise AnalysisFailed(
            f"AI response was not valid JSON: {e}",
            debug={"raw_response": (raw or "")[:DEBUG_EXCERPT_CHARS]},
        )
    if not isinstance(data, dict):
        raise AnalysisFailed(
            "AI response was not a JSON object",
            debug={"raw_response": (raw or "")[:DEBUG_EXCERPT_CHARS]},
        )
    return data


@dataclass(kw_only=True)
class _Analysis:
    url: str
    page_type: str
    reason: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    redirect_history: List[Dict[str, str]] = field(default_factory=list)
    original_size: int = 0
    reduced_size: int = 0

    kind = "unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.kind,
            "url": self.url,
            "final_url": self.url,
            "page_type": self.page_type,
            "page_type_reason": self.reason,
            "ai_provider": self.provider,
            "ai_model": self.model,
            "redirect_history": list(self.redirect_history),
            "original_size": self.original_size,
            "reduced_size": self.reduced_size,
        }


@dataclass(kw_only=True)
class Listing(_Analysis):
    recipe: SelectorRecipe
    sample_papers: List[Dict[str, Any]] = field(default_factory=list)

    kind = "listing"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "is_article_list_page": True,
            "selectors": self.recipe.to_dict(),
            "sample_papers": list(self.sample_papers),
            "article_list_url": None,
        })
        return data

    def extraction_config(self) -> Dict[str, Any]:
        """Document stored on the generated feed row."""
        return {
            "selectors": self.recipe.to_dict(),
            "page_type": self.page_type,
            "page_type_reason": self.reason,
            "sample_papers": list(self.sample_papers),
            "redirect_history": list(self.redirect_history),
        }


@dataclass(kw_only=True)
class Redirect(_Analysis):
    target_url: str

    kind = "redirect"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"is_article_list_page": False, "article_list_url": self.target_url,
                     "selectors": None, "sample_papers": []})
        return data


@dataclass(kw_only=True)
class Unsupported(_Analysis):
    kind = "unsupported"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"is_article_list_page": False, "article_list_url": None,
                     "selectors": None, "sample_papers": []})
        return data


AnalysisResult = Union[Listing, Redirect, Unsupported]


class PageStructureAnalyzer:
    """Classifies journal pages and derives selector recipes with an AI provider."""

    def __init__(self, page_fetcher: Optional[PageFetcher] = None,
                 credentials: Optional[AICredentials] = None,
                 client_override: Optional[Any] = None):
        self.page_fetcher = page_fetcher or PageFetcher()
        self.credentials = credentials
        self.client_override = client_override
        self.prompts: Dict[str, str] = load_prompts()

    def _resolve_credentials(self, credentials: Optional[AICredentials]) -> AICredentials:
        resolved = credentials or self.credentials or system_credentials()
        if resolved is not None:
            return resolved
        if self.client_override is not None:
            return AICredentials(PROVIDER_OPENAI, "", config.OPENAI_MODEL)
        raise ValidationFailed("No AI API key configured. Set OPENAI_API_KEY or ANTHROPIC_API_KEY.")

    async def _ask(self, purpose: str, page: PageFetchResult, credentials: AICredentials) -> Dict[str, Any]:
        return await self._ask_about(purpose, f"URL: {page.final_url}\n\nHTML:\n{page.reduced_html}", credentials)

    async def _ask_about(self, purpose: str, content: str, credentials: AICredentials) -> Dict[str, Any]:
        instructions = self.prompts.get(purpose)
        if not instructions:
            raise AnalysisFailed(f"No '{purpose}' prompt found in configuration")
        messages = [
            {"role": "system", "content": f"{self.prompts.get('system', '').strip()}\n\n{instructions}".strip()},
            {"role": "user", "content": content},
        ]
        try:
            raw = await chat_completion(
                messages,
                purpose=f"analyze.{purpose}",
                credentials=credentials,
                client_override=self.client_override,
            )
        except ContentFilterError as e:
            raise AnalysisFailed(f"AI provider blocked the {purpose} request: {e}", debug=e.details)
        if raw is None:
            raise AnalysisFailed(f"AI {purpose} call failed or returned no content")
        return parse_json_response(raw)

    async def classify(self, page: PageFetchResult, credentials: AICredentials) -> Tuple[str, Optional[str]]:
        """Return (page_type, reason) for a fetched page."""
        data = await self._ask("classify", page, credentials)
        page_type = str(data.get("page_type") or "").strip().lower()
        if page_type not in PAGE_TYPES:
            page_type = PAGE_ARTICLE_LIST if data.get("is_article_list_page") is True else "unknown"
        reason = data.get("reason") or data.get("page_type_reason")
        return page_type, str(reason) if reason else None

    async def extract_selectors(self, page: PageFetchResult,
                                credentials: AICredentials) -> Tuple[SelectorRecipe, List[Dict[str, Any]]]:
        """Return (recipe, sample_papers) for an article list page."""
        data = await self._ask("extract", page, credentials)
        selectors = data.get("selectors") if isinstance(data.get("selectors"), dict) else {}
        recipe = SelectorRecipe.from_dict(selectors)
        if not recipe.base_url and isinstance(data.get("base_url"), str) and data["base_url"].strip():
            recipe.base_url = data["base_url"].strip()
        if not recipe.is_configured():
            raise AnalysisFailed(
                "Could not identify page structure: selectors lack paper_container or title",
                debug={"selectors": selectors, "raw_response": json.dumps(data)[:DEBUG_EXCERPT_CHARS]},
            )

        samples = []
        for sample in data.get("sample_papers") or []:
            if isinstance(sample, dict) and sample.get("title"):
                samples.append({
                    "title": str(sample.get("title")),
                    "url": urljoin(page.final_url, sample["url"]) if isinstance(sample.get("url"), str) else None,
                    "doi": sample.get("doi") or None,
                })
            if len(samples) >= config.SAMPLE_PAPER_LIMIT:
                break
        return recipe, samples

    async def suggest_redirect(self, page: PageFetchResult, credentials: AICredentials) -> Optional[str]:
        """Absolute URL of the article list linked from this page, if any."""
        data = await self._ask("suggest_redirect", page, credentials)
        target = data.get("article_list_url")
        if not isinstance(target, str) or not target.strip() or target.strip().lower() in ("null", "none"):
            return None
        resolved = urljoin(page.final_url, target.strip())
        if not validate_url(resolved) or normalize_url(resolved) == normalize_url(page.final_url):
            return None
        return resolved

    @trace_span(
        "analyze_descriptions",
        tracer_name="analyzer",
        attr_from_args=lambda self, feed_url, descriptions, credentials=None: {"feed.url": feed_url},
    )
    async def analyze_descriptions(self, feed_url: str, descriptions: List[str],
                                   credentials: Optional[AICredentials] = None) -> Dict[str, Any]:
        """Ask the AI provider how a feed's item descriptions embed paper metadata.

        The answer is turned into an rss_metadata extraction config whose
        confidence is measured against the same descriptions, so a wrong
        answer scores low instead of being trusted.
        """
        creds = self._resolve_credentials(credentials)
        samples = "\n\n".join(
            f"--- Item {index} ---\n{description[:DESCRIPTION_SAMPLE_CHARS]}"
            for index, description in enumerate(descriptions, 1)
        )
        data = await self._ask_about("rss_structure", f"Feed URL: {feed_url}\n\n{samples}", creds)

        layout = data.get("detected_format")
        layout = layout if layout in FORMATS else None
        labels = {}
        if isinstance(data.get("labels"), dict):
            labels = {str(label).strip(): field for label, field in data["labels"].items()
                      if field in FIELDS and str(label).strip()}
        meta = {"provider": creds.provider, "model": creds.model}
        if layout is None:
            return {**build_config(None, 0.0, {}, SOURCE_AI), **meta}
        confidence, validation = score_config(descriptions, layout, labels)
        logger.info(f"AI read {feed_url} descriptions as {layout} (confidence {confidence})")
        return {**build_config(layout, confidence, labels, SOURCE_AI), "validation": validation, **meta}

    async def analyze_page(self, page: PageFetchResult,
                           credentials: Optional[AICredentials] = None) -> AnalysisResult:
        """Run the classify -> extract | suggest_redirect transitions on a fetched page."""
        creds = self._resolve_credentials(credentials)
        meta = {
            "url": page.final_url,
            "provider": creds.provider,
            "model": creds.model,
            "redirect_history": [hop.to_dict() for hop in page.redirect_history],
            "original_size": page.original_size,
            "reduced_size": page.reduced_size,
        }

        page_type, reason = await self.classify(page, creds)
        logger.info(f"Classified {page.final_url} as {page_type}: {reason or '-'}")

        if page_type == PAGE_ARTICLE_LIST:
            recipe, samples = await self.extract_selectors(page, creds)
            return Listing(page_type=page_type, reason=reason, recipe=recipe, sample_papers=samples, **meta)

        if page_type in REDIRECTABLE_PAGE_TYPES:
            target = await self.suggest_redirect(page, creds)
            if target:
                logger.info(f"Suggested article list for {page.final_url}: {target}")
                return Redirect(page_type=page_type, reason=reason, target_url=target, **meta)

        return Unsupported(page_type=page_type, reason=reason, **meta)

    @trace_span(
        "analyze",
        tracer_name="analyzer",
        attr_from_args=lambda self, url, credentials=None: {"analyze.url": url},
    )
    async def analyze(self, url: str, credentials: Optional[AICredentials] = None) -> AnalysisResult:
        """Single-pass analysis; a redirect suggestion is returned, not followed."""
        creds = self._resolve_credentials(credentials)
        page = await self.page_fetcher.fetch_and_reduce(url)
        return await self.analyze_page(page, creds)

    @trace_span(
        "analyze_with_redirects",
        tracer_name="analyzer",
        attr_from_args=lambda self, url, max_redirects=None, credentials=None: {"analyze.url": url},
    )
    async def analyze_with_redirects(self, url: str, max_redirects: Optional[int] = None,
                                     credentials: Optional[AICredentials] = None) -> AnalysisResult:
        """Follow AI redirect suggestions until an article list is found or hops run out."""
        limit = config.ANALYSIS_MAX_REDIRECTS if max_redirects is None else max_redirects
        creds = self._resolve_credentials(credentials)
        history: List[Dict[str, str]] = []
        visited = {normalize_url(url)}
        current = url
        hops = 0

        while True:
            result = await self.analyze(current, creds)
            visited.add(normalize_url(result.url))
            if not isinstance(result, Redirect) or hops >= limit:
                break
            if normalize_url(result.target_url) in visited:
                logger.warning(f"Redirect suggestion from {result.url} loops back to {result.target_url}")
                result = Unsupported(
                    url=result.url,
                    page_type=result.page_type,
                    reason=f"Suggested article list {result.target_url} was already visited",
                    provider=result.provider,
                    model=result.model,
                    redirect_history=result.redirect_history,
                    original_size=result.original_size,
                    reduced_size=result.reduced_size,
                )
                break
            history.extend(result.redirect_history)
            history.append({"from": result.url, "to": result.target_url, "page_type": result.page_type})
            visited.add(normalize_url(result.target_url))
            current = result.target_url
            hops += 1
            logger.info(f"Following suggested article list ({hops}/{limit}): {current}")

        result.redirect_history = history + result.redirect_history
        return result


__all__ = [
    "PageStructureAnalyzer",
    "AnalysisResult",
    "Listing",
    "Redirect",
    "Unsupported",
    "parse_json_response",
    "load_prompts",
]
