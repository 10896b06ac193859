#!/usr/bin/env python3
"""Async Azure OpenAI helper providing `chat_completion` with retry, content filter handling
and normalized content extraction. Returns `None` on exhausted retries or empty output."""
from __future__ import annotations
from typing import List, Dict, Any, Optional
from asyncio import sleep

from openai import AsyncAzureOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError

logger = get_logger("llm_client")

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the Azure OpenAI async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not config.has_openai():
        logger.debug("Missing Azure OpenAI config; client will not initialize")
        return None
    endpoint = config.AZURE_ENDPOINT
    if not str(endpoint).startswith("http"):
        endpoint = f"https://{endpoint}"
    _client = AsyncAzureOpenAI(
        api_key=config.OPENAI_API_KEY,
        api_version=config.OPENAI_API_VERSION,
        azure_endpoint=endpoint,
    )
    return _client


def _content_filter_details(exc: Exception) -> Optional[Dict[str, Any]]:
    """Return the provider error payload when ``exc`` is a content-filter rejection."""
    body = getattr(exc, "body", None) or {}
    error_obj = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error_obj, dict):
        return None
    inner = error_obj.get("innererror") if isinstance(error_obj.get("innererror"), dict) else {}
    if error_obj.get("code") == "content_filter" or inner.get("code") == "ResponsibleAIPolicyViolation":
        return error_obj
    return None


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", None) or {}
    if isinstance(message, dict):
        if message.get("refusal"):
            return ""
        content = message.get("content")
    else:
        if getattr(message, "refusal", None):
            return ""
        content = getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts = [part.get("text").strip() for part in content
                 if isinstance(part, dict) and isinstance(part.get("text"), str) and part.get("text").strip()]
        return "\n".join(texts).strip()
    return ""


async def chat_completion(
    messages: List[Dict[str, str]],
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute an Azure OpenAI chat completion. Raises `ContentFilterError` on policy violations."""
    if not messages:
        logger.error("chat_completion called without messages")
        return None

    client = client_override or _get_client()
    if client is None:
        logger.warning("Azure OpenAI client unavailable; skipping %s", purpose)
        return None

    remaining = retries if retries is not None else config.ANALYZER_MAX_RETRIES
    attempt = 0

    while attempt <= remaining:
        try:
            resp = await client.chat.completions.create(model=config.DEPLOYMENT_NAME, messages=messages)
            choices = getattr(resp, "choices", None) or []
            if not choices:
                logger.error("No choices in %s response", purpose)
                return None
            raw = "\n".join(t for t in (_extract_text(c) for c in choices) if t).strip()
            if not raw:
                finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
                logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
                return None
            return raw
        except Exception as e:
            details = _content_filter_details(e)
            if details is not None:
                raise ContentFilterError(message=details.get("message", "Content filtered"), details=details)
            attempt += 1
            if attempt > remaining:
                logger.error("%s request failed after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.ANALYZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            kind = "transient OpenAI error" if isinstance(e, OpenAIError) else "unexpected error"
            logger.warning("%s %s: %s. Backoff %ss (attempt %d/%d)", purpose, kind, e, delay, attempt, remaining)
            await sleep(delay)

    return None


__all__ = ["chat_completion"]
