"""
Provider chain tests: stage classification, retries and tier routing.
"""

import pytest
from unittest.mock import AsyncMock, patch

from ai.application_ai import ApplicationAI, _safe_json_loads
from ai.providers import (
    AnthropicProvider,
    OpenAIProvider,
    ProviderChain,
    StageResult,
    StageStatus,
    build_provider_chain,
    classify_http_status,
)
from api.config import AppConfig
from api.errors import ProviderUnavailable


def _provider(cls=OpenAIProvider, max_retries=2):
    return cls("key", "model", "https://llm.example.com/v1", timeout=5, max_retries=max_retries, retry_delay=0)


@pytest.mark.unit
@pytest.mark.parametrize("status,expected", [
    (200, StageStatus.OK),
    (429, StageStatus.RETRYABLE),
    (503, StageStatus.RETRYABLE),
    (401, StageStatus.RETRYABLE),
    (400, StageStatus.FATAL),
    (422, StageStatus.FATAL),
])
def test_classify_http_status(status, expected):
    assert classify_http_status(status) == expected


@pytest.mark.unit
class TestChatProvider:

    @pytest.mark.asyncio
    async def test_retries_retryable_then_succeeds(self):
        provider = _provider()
        attempts = [StageResult.retryable("HTTP 429"), StageResult.ok("hello")]

        with patch.object(provider, "_attempt", AsyncMock(side_effect=attempts)) as attempt:
            result = await provider.complete([{"role": "user", "content": "hi"}])

        assert result.status == StageStatus.OK
        assert result.value == "hello"
        assert attempt.await_count == 2

    @pytest.mark.asyncio
    async def test_fatal_is_not_retried(self):
        provider = _provider(max_retries=3)

        with patch.object(provider, "_attempt", AsyncMock(return_value=StageResult.fatal("HTTP 400"))) as attempt:
            result = await provider.complete([{"role": "user", "content": "hi"}])

        assert result.status == StageStatus.FATAL
        assert attempt.await_count == 1

    def test_anthropic_request_moves_system_prompt(self):
        provider = _provider(AnthropicProvider)
        url, headers, body = provider._request(
            [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}], 0.2, 100
        )

        assert url.endswith("/messages")
        assert headers["x-api-key"] == "key"
        assert body["system"] == "be brief"
        assert body["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.unit
class TestProviderChain:

    @pytest.mark.asyncio
    async def test_secondary_used_after_retryable_primary(self):
        primary, secondary = _provider(), _provider(AnthropicProvider)
        primary.complete = AsyncMock(return_value=StageResult.retryable("HTTP 503"))
        secondary.complete = AsyncMock(return_value=StageResult.ok("from secondary"))

        value = await ProviderChain([primary, secondary]).complete([{"role": "user", "content": "hi"}])

        assert value == "from secondary"

    @pytest.mark.asyncio
    async def test_fatal_primary_falls_through_to_secondary(self):
        primary, secondary = _provider(), _provider(AnthropicProvider)
        primary.complete = AsyncMock(return_value=StageResult.fatal("HTTP 400"))
        secondary.complete = AsyncMock(return_value=StageResult.ok("from secondary"))

        value = await ProviderChain([primary, secondary]).complete([{"role": "user", "content": "hi"}])

        assert value == "from secondary"
        primary.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_all_stages_failing_reports_each(self):
        primary, secondary = _provider(), _provider(AnthropicProvider)
        primary.complete = AsyncMock(return_value=StageResult.fatal("HTTP 404"))
        secondary.complete = AsyncMock(return_value=StageResult.retryable("HTTP 529"))

        with pytest.raises(ProviderUnavailable, match="openai: HTTP 404; anthropic: HTTP 529"):
            await ProviderChain([primary, secondary]).complete([{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_empty_chain_is_unavailable(self):
        with pytest.raises(ProviderUnavailable, match="no AI provider configured"):
            await ProviderChain([]).complete([{"role": "user", "content": "hi"}])


@pytest.mark.unit
class TestTierRouting:

    def _cfg(self, openai="sk-test", anthropic="ak-test"):
        cfg = AppConfig()
        cfg.OPENAI_API_KEY = openai
        cfg.ANTHROPIC_API_KEY = anthropic
        return cfg

    @pytest.mark.parametrize("tier", ["basic", "standard", "premium"])
    def test_every_tier_has_secondary(self, tier):
        chain = build_provider_chain(tier, self._cfg())
        assert [p.name for p in chain.providers] == ["openai", "anthropic"]

    def test_basic_uses_lite_models(self):
        cfg = self._cfg()
        chain = build_provider_chain("basic", cfg)
        assert [p.model for p in chain.providers] == [cfg.OPENAI_MODEL_LITE, cfg.ANTHROPIC_MODEL_LITE]

    def test_standard_uses_full_models(self):
        cfg = self._cfg()
        chain = build_provider_chain("standard", cfg)
        assert [p.model for p in chain.providers] == [cfg.OPENAI_MODEL, cfg.ANTHROPIC_MODEL]

    def test_secondary_alone_when_primary_missing(self):
        chain = build_provider_chain("standard", self._cfg(openai=""))
        assert [p.name for p in chain.providers] == ["anthropic"]

    def test_nothing_configured(self):
        assert not build_provider_chain("premium", self._cfg(openai="", anthropic="")).available


@pytest.mark.unit
class TestApplicationAI:

    def test_safe_json_loads_handles_fences(self):
        assert _safe_json_loads('```json\n{"score": 80}\n```') == {"score": 80}
        assert _safe_json_loads("Sure! {\"index\": 2} hope that helps") == {"index": 2}
        assert _safe_json_loads("no json here") is None

    @pytest.mark.asyncio
    async def test_match_score_clamped(self):
        chain = AsyncMock()
        chain.complete.return_value = '{"score": 140, "reasons": ["a", "b", "c", "d", "e", "f"]}'

        data = await ApplicationAI(chain).match_score("resume", "job")

        assert data["score"] == 100
        assert len(data["reasons"]) == 5

    @pytest.mark.asyncio
    async def test_unparseable_score_raises(self):
        chain = AsyncMock()
        chain.complete.return_value = "I think it's a great fit!"

        with pytest.raises(ProviderUnavailable):
            await ApplicationAI(chain).match_score("resume", "job")

    @pytest.mark.asyncio
    async def test_select_option_out_of_range(self):
        chain = AsyncMock()
        chain.complete.return_value = '{"index": 7}'

        with pytest.raises(ProviderUnavailable):
            await ApplicationAI(chain).select_option("Q?", ["a", "b"], "", "", "")
