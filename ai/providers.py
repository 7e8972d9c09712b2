#!/usr/bin/env python3
"""
AI Provider Chain

Chat-completion providers reached over aiohttp, arranged as a chain of
responsibility. Each stage reports Ok / Retryable / Fatal; the chain
returns the first Ok and raises ProviderUnavailable otherwise, leaving the
deterministic fallback to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from api.config import AppConfig, config as app_config
from api.errors import ProviderUnavailable
from api.logging_config import log_ai_request

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]


class StageStatus(str, Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class StageResult:
    status: StageStatus
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: str) -> "StageResult":
        return cls(StageStatus.OK, value=value)

    @classmethod
    def retryable(cls, error: str) -> "StageResult":
        return cls(StageStatus.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, error: str) -> "StageResult":
        return cls(StageStatus.FATAL, error=error)


def classify_http_status(status: int) -> StageStatus:
    """429, 5xx and auth problems may clear up on another provider; other 4xx will not."""
    if status < 400:
        return StageStatus.OK
    if status in (401, 403, 408, 409, 429) or status >= 500:
        return StageStatus.RETRYABLE
    return StageStatus.FATAL


class ChatProvider:
    """Base provider: one HTTP request per attempt, retried while Retryable."""

    name = "provider"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay

    def _request(self, messages: Messages, temperature: float, max_tokens: int) -> tuple:
        raise NotImplementedError

    def _extract(self, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    async def _attempt(self, messages: Messages, temperature: float, max_tokens: int) -> StageResult:
        url, headers, body = self._request(messages, temperature, max_tokens)
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, headers=headers, json=body) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        status = classify_http_status(resp.status)
                        return StageResult(status, error=f"HTTP {resp.status}: {text[:200]}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return StageResult.retryable(f"{type(e).__name__}: {e}")

        try:
            content = (self._extract(data) or "").strip()
        except (KeyError, IndexError, TypeError) as e:
            return StageResult.retryable(f"Malformed response: {e}")
        if not content:
            return StageResult.retryable("Empty completion")
        return StageResult.ok(content)

    async def complete(
        self,
        messages: Messages,
        *,
        operation: str = "complete",
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> StageResult:
        result = StageResult.retryable("not attempted")
        for attempt in range(self.max_retries):
            result = await self._attempt(messages, temperature, max_tokens)
            log_ai_request(self.name, operation, error=result.error)
            if result.status != StageStatus.RETRYABLE:
                return result
            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.retry_delay * (attempt + 1))
        return result


class OpenAIProvider(ChatProvider):
    """OpenAI-compatible /chat/completions endpoint."""

    name = "openai"

    def _request(self, messages: Messages, temperature: float, max_tokens: int) -> tuple:
        return (
            f"{self.base_url}/chat/completions",
            {"Authorization": f"Bearer {self.api_key}"},
            {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

    def _extract(self, data: Dict[str, Any]) -> str:
        return data["choices"][0]["message"]["content"]


class AnthropicProvider(ChatProvider):
    """Anthropic /messages endpoint; system prompt travels separately."""

    name = "anthropic"

    def _request(self, messages: Messages, temperature: float, max_tokens: int) -> tuple:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": turns,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            body["system"] = system
        return (
            f"{self.base_url}/messages",
            {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            body,
        )

    def _extract(self, data: Dict[str, Any]) -> str:
        return "".join(block.get("text", "") for block in data["content"] if block.get("type") == "text")


class ProviderChain:
    """
    Primary -> secondary; stops at the first Ok. A Fatal result only ends
    retries inside its own stage, the next provider is still tried.
    """

    def __init__(self, providers: Sequence[ChatProvider]):
        self.providers = list(providers)

    @property
    def available(self) -> bool:
        return bool(self.providers)

    async def complete(
        self,
        messages: Messages,
        *,
        operation: str = "complete",
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> str:
        errors: List[str] = []
        for provider in self.providers:
            result = await provider.complete(
                messages, operation=operation, temperature=temperature, max_tokens=max_tokens
            )
            if result.status == StageStatus.OK:
                return result.value or ""
            errors.append(f"{provider.name}: {result.error}")

        if not self.providers:
            errors.append("no AI provider configured")
        raise ProviderUnavailable("; ".join(errors))


def build_provider_chain(tier: str = "basic", cfg: Optional[AppConfig] = None) -> ProviderChain:
    """
    Every tier chains primary then secondary, each when its key is set.
    The tier only picks the model: basic runs the lite models.
    """
    cfg = cfg or app_config
    common = dict(
        timeout=cfg.AI_TIMEOUT_SECONDS,
        max_retries=cfg.AI_MAX_RETRIES,
        retry_delay=cfg.AI_RETRY_DELAY_SECONDS,
    )
    stages: List[ChatProvider] = []
    lite = tier == "basic"
    if cfg.OPENAI_API_KEY:
        model = cfg.OPENAI_MODEL_LITE if lite else cfg.OPENAI_MODEL
        stages.append(OpenAIProvider(cfg.OPENAI_API_KEY, model, cfg.OPENAI_BASE_URL, **common))
    if cfg.ANTHROPIC_API_KEY:
        model = cfg.ANTHROPIC_MODEL_LITE if lite else cfg.ANTHROPIC_MODEL
        stages.append(AnthropicProvider(cfg.ANTHROPIC_API_KEY, model, cfg.ANTHROPIC_BASE_URL, **common))

    if not stages:
        logger.warning(f"No AI provider configured for tier '{tier}'; deterministic fallbacks only")
    return ProviderChain(stages)
