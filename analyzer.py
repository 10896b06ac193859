#!/usr/bin/env python3
"""
AI analyzer collaborator.

``Analyzer.summarize(text)`` turns raw discussion text into a Markdown summary.
``LLMAnalyzer`` backs it with the Azure OpenAI chat completion helper, paced by a
token bucket and driven by the prompts in prompts.yaml.
"""

from typing import Any, Dict, Optional, Protocol

from config import config, get_logger
from llm_client import chat_completion
from utils import RateLimiter, truncate_string

logger = get_logger("analyzer")

DEFAULT_SYSTEM_PROMPT = "Summarize the following community discussion in concise Markdown."


class Analyzer(Protocol):
    async def summarize(self, text: str, *, prompt: Optional[str] = None, purpose: str = "analysis") -> Optional[str]:
        """Return Markdown for ``text``, or None when no summary could be produced."""
        ...


def load_prompts(prompt_path: Optional[str] = None) -> Dict[str, str]:
    """Load prompts from prompts.yaml; an unreadable file yields an empty mapping."""
    data = config.load_yaml(prompt_path or config.PROMPT_CONFIG_PATH, "prompts")
    if not isinstance(data, dict):
        return {}
    return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}


class LLMAnalyzer:
    """Analyzer backed by Azure OpenAI."""

    def __init__(
        self,
        prompts: Optional[Dict[str, str]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client_override: Optional[Any] = None,
    ):
        self.prompts = prompts if prompts is not None else load_prompts()
        self.rate_limiter = rate_limiter or RateLimiter(config.ANALYZER_REQUESTS_PER_MINUTE, name="analyzer")
        self.client_override = client_override
        self.max_input_chars = config.ANALYZER_MAX_INPUT_CHARS

    def prompt_for(self, name: str, **values: str) -> Optional[str]:
        template = self.prompts.get(name)
        if not template:
            logger.warning(f"Prompt '{name}' missing from prompt configuration")
            return None
        try:
            return template.format(**values)
        except (KeyError, IndexError) as e:
            logger.warning(f"Prompt '{name}' has an unknown placeholder: {e}")
            return template

    async def summarize(self, text: str, *, prompt: Optional[str] = None, purpose: str = "analysis") -> Optional[str]:
        if not text or not text.strip():
            return None
        body = truncate_string(text, self.max_input_chars, suffix="\n[...truncated]")
        instructions = prompt or ""
        messages = [
            {"role": "system", "content": self.prompts.get("system") or DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": f"{instructions}\n\n{body}".strip()},
        ]
        await self.rate_limiter.acquire()
        return await chat_completion(messages, purpose=purpose, client_override=self.client_override)
