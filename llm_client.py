#!/usr/bin/env python3
"""Async chat helper for the page analyzer.

`chat_completion` talks to OpenAI, Azure OpenAI or Anthropic Claude depending
on the AICredentials it is given, retrying transient failures with backoff.
Returns the response text, or `None` on exhausted retries or non-filter
failures. Provider identity is only passed through; callers never branch on it.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Callable, Tuple
from asyncio import sleep

from openai import AsyncOpenAI, AsyncAzureOpenAI, OpenAIError, AuthenticationError as OpenAIAuthenticationError
from anthropic import AsyncAnthropic, AnthropicError, AuthenticationError as AnthropicAuthenticationError

from config import config, get_logger
from errors import ContentFilterError
from utils import RateLimiter

logger = get_logger("llm_client")

PROVIDER_OPENAI = "openai"
PROVIDER_AZURE = "azure"
PROVIDER_CLAUDE = "claude"

DEFAULT_TEMPERATURE = 0.1
CLAUDE_MAX_TOKENS = 4000
# Older chat models have too small a context window for page HTML
MODEL_UPGRADES = {"gpt-3.5-turbo": "gpt-4o-mini"}

_clients: Dict[Tuple[str, str, Optional[str]], Any] = {}
_rate_limiter = RateLimiter(config.AI_REQUESTS_PER_MINUTE)


@dataclass
class AICredentials:
    """Provider credential supplied per user or taken from system config."""

    provider: str
    api_key: str
    model: str
    endpoint: Optional[str] = None
    api_version: Optional[str] = None

    def __post_init__(self):
        self.provider = (self.provider or PROVIDER_OPENAI).lower()
        if self.provider == "anthropic":
            self.provider = PROVIDER_CLAUDE
        self.model = normalize_model(self.provider, self.model)

    def __repr__(self) -> str:
        return f"AICredentials(provider={self.provider!r}, model={self.model!r})"


def normalize_model(provider: str, model: Optional[str]) -> str:
    """Fill in the provider default model and upgrade models that are too small."""
    if not model:
        return config.CLAUDE_MODEL if provider == PROVIDER_CLAUDE else config.OPENAI_MODEL
    return MODEL_UPGRADES.get(model, model)


def system_credentials(preferred: Optional[str] = None) -> Optional[AICredentials]:
    """System-level credentials from config, preferring ``preferred`` (or AI_PROVIDER)."""
    preferred = (preferred or config.AI_PROVIDER or PROVIDER_OPENAI).lower()
    order = [PROVIDER_CLAUDE, PROVIDER_OPENAI] if preferred in (PROVIDER_CLAUDE, "anthropic") else [PROVIDER_OPENAI, PROVIDER_CLAUDE]
    for provider in order:
        if provider == PROVIDER_CLAUDE and config.ANTHROPIC_API_KEY:
            return AICredentials(PROVIDER_CLAUDE, config.ANTHROPIC_API_KEY, config.CLAUDE_MODEL)
        if provider == PROVIDER_OPENAI and config.OPENAI_API_KEY:
            if config.AZURE_ENDPOINT and config.OPENAI_API_VERSION:
                return AICredentials(
                    PROVIDER_AZURE,
                    config.OPENAI_API_KEY,
                    config.OPENAI_MODEL,
                    endpoint=config.AZURE_ENDPOINT,
                    api_version=config.OPENAI_API_VERSION,
                )
            return AICredentials(PROVIDER_OPENAI, config.OPENAI_API_KEY, config.OPENAI_MODEL)
    return None


def _get_client(credentials: AICredentials) -> Any:
    """Instantiate and cache an async SDK client per credential."""
    key = (credentials.provider, credentials.api_key, credentials.endpoint)
    if key in _clients:
        return _clients[key]
    if credentials.provider == PROVIDER_CLAUDE:
        client = AsyncAnthropic(api_key=credentials.api_key, timeout=config.AI_TIMEOUT, max_retries=0)
    elif credentials.provider == PROVIDER_AZURE:
        endpoint = credentials.endpoint or ""
        client = AsyncAzureOpenAI(
            api_key=credentials.api_key,
            api_version=credentials.api_version,
            azure_endpoint=endpoint if endpoint.startswith("http") else f"https://{endpoint}",
            timeout=config.AI_TIMEOUT,
            max_retries=0,
        )
    else:
        client = AsyncOpenAI(api_key=credentials.api_key, timeout=config.AI_TIMEOUT, max_retries=0)
    _clients[key] = client
    return client


def _openai_text(resp: Any, purpose: str) -> Optional[str]:
    """Concatenate text from OpenAI chat choices, honouring refusals."""
    choices = getattr(resp, "choices", None) or []
    if not choices:
        logger.error("No choices in %s response", purpose)
        return None

    fragments: List[str] = []
    refusal_detected = False
    for choice in choices:
        message = getattr(choice, "message", None)
        if getattr(message, "refusal", None):
            refusal_detected = True
            logger.warning("Refusal detected in %s response: %s", purpose, message.refusal)
            continue
        content = getattr(message, "content", None)
        if isinstance(content, str) and content.strip():
            fragments.append(content.strip())
        elif isinstance(content, list):
            for part in content:
                text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
                if isinstance(text, str) and text.strip():
                    fragments.append(text.strip())
    if refusal_detected and not fragments:
        return None
    if not fragments:
        finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
        logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
        return None
    return "\n".join(fragments).strip()


def _claude_text(resp: Any, purpose: str) -> Optional[str]:
    """Concatenate text blocks from an Anthropic messages response."""
    if getattr(resp, "stop_reason", None) == "refusal":
        logger.warning("Refusal detected in %s response", purpose)
        return None
    texts = []
    for block in getattr(resp, "content", None) or []:
        if getattr(block, "type", None) == "text" and getattr(block, "text", None):
            texts.append(block.text.strip())
    if not texts:
        logger.error("Empty content in %s response (stop_reason=%s)", purpose, getattr(resp, "stop_reason", None))
        return None
    return "\n".join(texts).strip()


def _raise_if_filtered(error: Exception) -> None:
    body = getattr(error, "body", None) or {}
    error_obj = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_obj, dict):
        return
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if error_obj.get("code") == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        raise ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)


async def chat_completion(
    messages: List[Dict[str, str]] = None,
    *,
    purpose: str = "generic",
    credentials: Optional[AICredentials] = None,
    retries: Optional[int] = None,
    postprocess: Optional[Callable[[str], str]] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute a chat completion. Raises `ContentFilterError` on policy violations."""
    if not messages:
        logger.error("chat_completion called without messages list")
        return None

    credentials = credentials or system_credentials()
    if credentials is None and client_override is None:
        logger.warning("No AI credentials configured; skipping %s", purpose)
        return None
    if credentials is None:
        credentials = AICredentials(PROVIDER_OPENAI, "", config.OPENAI_MODEL)

    client = client_override or _get_client(credentials)
    is_claude = credentials.provider == PROVIDER_CLAUDE
    remaining = retries if retries is not None else config.AI_MAX_RETRIES
    attempt = 0

    system_prompt = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
    chat_messages = [m for m in messages if m.get("role") != "system"]

    while attempt <= remaining:
        if client_override is None:
            await _rate_limiter.acquire()
        try:
            if is_claude:
                params: Dict[str, Any] = {
                    "model": credentials.model,
                    "max_tokens": CLAUDE_MAX_TOKENS,
                    "temperature": DEFAULT_TEMPERATURE,
                    "messages": chat_messages,
                }
                if system_prompt:
                    params["system"] = system_prompt
                resp = await client.messages.create(**params)
                raw = _claude_text(resp, purpose)
            else:
                resp = await client.chat.completions.create(
                    model=credentials.model,
                    messages=messages,
                    temperature=DEFAULT_TEMPERATURE,
                )
                raw = _openai_text(resp, purpose)
            if raw is None:
                return None
            return postprocess(raw) if postprocess else raw
        except (OpenAIAuthenticationError, AnthropicAuthenticationError) as e:
            logger.error("%s rejected credentials for %s: %s", credentials.provider, purpose, e)
            return None
        except (OpenAIError, AnthropicError) as e:
            _raise_if_filtered(e)
            attempt += 1
            if attempt > remaining:
                logger.error("%s request failed after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.AI_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s transient %s error: %s. Backoff %ss (attempt %d/%d)",
                           purpose, credentials.provider, e, delay, attempt, remaining)
            await sleep(delay)
        except Exception as e:
            _raise_if_filtered(e)
            attempt += 1
            if attempt > remaining:
                logger.error("%s unexpected failure after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.AI_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s unexpected error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await sleep(delay)

    return None


__all__ = ["AICredentials", "chat_completion", "system_credentials", "normalize_model"]
