"""Tests for gridwise.providers.model_provider."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from gridwise.config import DEFAULT_PRICING, ModelPricing
from gridwise.exceptions import ModelTimeoutError, ProviderNotConfiguredError
from gridwise.providers import model_provider
from gridwise.providers.model_provider import (
    ModelProvider, calculate_cost, get_pricing, get_provider, get_rate_limits,
)


def test_cost_is_per_million_tokens():
    assert calculate_cost(1000, 500, ModelPricing(input=1.0, output=2.0)) == pytest.approx(0.002)


@pytest.mark.parametrize("model_id, provider", [
    ("gpt-4o-mini", "azure"),
    ("deepseek-chat", "azure"),
    ("gemini-2.5-flash", "google"),
    ("some-new-model", "google"),
])
def test_provider_routing(model_id, provider):
    assert get_provider(model_id) == provider


def test_rate_limits_are_looked_up_per_provider():
    assert get_rate_limits("gpt-5-mini").concurrent_requests == 75
    google = get_rate_limits("gemini-2.5-flash")
    assert google.concurrent_requests == 10
    assert google.delay_between_chunks_ms == 200


def test_unknown_models_use_default_pricing():
    assert get_pricing("gemini-2.5-pro") == ModelPricing(1.25, 10.0)
    assert get_pricing("mystery") == DEFAULT_PRICING


def _provider_with(chat_model) -> ModelProvider:
    provider = ModelProvider()
    provider.get_model = MagicMock(return_value=chat_model)
    return provider


@pytest.mark.asyncio
async def test_invoke_returns_text_and_usage():
    chat = MagicMock()
    chat.ainvoke = AsyncMock(return_value=AIMessage(
        content="Berlin",
        usage_metadata={"input_tokens": 12, "output_tokens": 3, "total_tokens": 15},
    ))
    result = await _provider_with(chat).invoke("Capital of Germany?", "gemini-2.5-flash")

    assert result.text == "Berlin"
    assert result.input_tokens == 12
    assert result.output_tokens == 3
    assert result.time_taken_ms >= 0


@pytest.mark.asyncio
async def test_invoke_joins_content_parts():
    chat = MagicMock()
    chat.ainvoke = AsyncMock(return_value=AIMessage(content=[{"type": "text", "text": "Ber"}, "lin"]))
    result = await _provider_with(chat).invoke("q", "gemini-2.5-flash")
    assert result.text == "Berlin"
    assert result.input_tokens == 0


@pytest.mark.asyncio
async def test_invoke_times_out():
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)

    chat = MagicMock()
    chat.ainvoke = slow
    with pytest.raises(ModelTimeoutError, match="timed out after 0.01 seconds"):
        await _provider_with(chat).invoke("q", "gemini-2.5-flash", timeout=0.01)


def test_missing_google_key_is_reported(monkeypatch):
    monkeypatch.setattr(model_provider.settings, "google_api_key", None)
    with pytest.raises(ProviderNotConfiguredError):
        ModelProvider().get_model("gemini-2.5-flash", 0.0, 100)


def test_gpt_models_fall_back_to_openai(monkeypatch):
    monkeypatch.setattr(model_provider.settings, "azure_openai_endpoint", None)
    monkeypatch.setattr(model_provider.settings, "openai_api_key", "sk-test")
    chat = ModelProvider().get_model("gpt-4o-mini", 0.2, 100)
    assert chat.model_name == "gpt-4o-mini"
