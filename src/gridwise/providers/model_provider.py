"""
Single-prompt model calls for sync enrichment.

Model ids starting with gpt-/deepseek- go to Azure OpenAI (or OpenAI when no
Azure endpoint is configured); everything else goes to Google Gemini.
"""
import asyncio
import logging
import time

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import AzureChatOpenAI, ChatOpenAI
from pydantic import BaseModel

from gridwise.config import (
    settings, MODEL_PRICING, DEFAULT_PRICING, PROVIDER_RATE_LIMITS, ModelPricing, RateLimits,
)
from gridwise.exceptions import ProviderNotConfiguredError, ModelTimeoutError

logger = logging.getLogger(__name__)


class ModelResult(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    time_taken_ms: int = 0


# ── Provider / pricing lookups ───────────────────────────────────────────────

def get_provider(model_id: str) -> str:
    if model_id.startswith("gpt-") or model_id.startswith("deepseek-"):
        return "azure"
    return "google"


def get_rate_limits(model_id: str) -> RateLimits:
    return PROVIDER_RATE_LIMITS[get_provider(model_id)]


def get_pricing(model_id: str) -> ModelPricing:
    return MODEL_PRICING.get(model_id, DEFAULT_PRICING)


def calculate_cost(input_tokens: int, output_tokens: int, pricing: ModelPricing) -> float:
    """USD cost; prices are per million tokens."""
    return (input_tokens * pricing.input + output_tokens * pricing.output) / 1_000_000


def _message_text(content) -> str:
    # Gemini may return a list of content parts instead of a plain string
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


# ── Provider ─────────────────────────────────────────────────────────────────

class ModelProvider:

    def __init__(self):
        self._models: dict[tuple, BaseChatModel] = {}

    def _build_model(self, model_id: str, temperature: float, max_output_tokens: int) -> BaseChatModel:
        if get_provider(model_id) == "google":
            if not settings.google_api_key:
                raise ProviderNotConfiguredError("GOOGLE_API_KEY is not set")
            return ChatGoogleGenerativeAI(
                model=model_id,
                temperature=temperature,
                max_output_tokens=max_output_tokens,
                google_api_key=settings.google_api_key,
            )

        if settings.azure_openai_endpoint and settings.azure_openai_api_key:
            return AzureChatOpenAI(
                azure_deployment=model_id,
                azure_endpoint=settings.azure_openai_endpoint,
                api_key=settings.azure_openai_api_key,
                api_version=settings.azure_openai_api_version,
                temperature=temperature,
                max_tokens=max_output_tokens,
            )
        if settings.openai_api_key:
            return ChatOpenAI(
                model=model_id,
                temperature=temperature,
                max_tokens=max_output_tokens,
                api_key=settings.openai_api_key,
            )
        raise ProviderNotConfiguredError("Neither AZURE_OPENAI_* nor OPENAI_API_KEY is set")

    def get_model(self, model_id: str, temperature: float, max_output_tokens: int) -> BaseChatModel:
        key = (model_id, temperature, max_output_tokens)
        if key not in self._models:
            self._models[key] = self._build_model(model_id, temperature, max_output_tokens)
        return self._models[key]

    async def invoke(
            self,
            prompt: str,
            model_id: str,
            temperature: float | None = None,
            max_output_tokens: int | None = None,
            timeout: float | None = None,
    ) -> ModelResult:
        """
        One prompt in, text plus token usage out.
        Raises ModelTimeoutError when the call exceeds `timeout` seconds.
        """
        model = self.get_model(
            model_id,
            settings.default_temperature if temperature is None else temperature,
            max_output_tokens or settings.max_output_tokens,
        )
        timeout = timeout or settings.ai_timeout_seconds

        started = time.monotonic()
        try:
            message = await asyncio.wait_for(model.ainvoke([HumanMessage(content=prompt)]), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ModelTimeoutError(f"AI request timed out after {timeout:g} seconds") from exc

        usage = getattr(message, "usage_metadata", None) or {}
        return ModelResult(
            text=_message_text(message.content),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            time_taken_ms=int((time.monotonic() - started) * 1000),
        )


_provider: ModelProvider | None = None


def get_model_provider() -> ModelProvider:
    global _provider
    if _provider is None:
        _provider = ModelProvider()
    return _provider
