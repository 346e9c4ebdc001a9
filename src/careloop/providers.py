# providers.py
# Text-generation back-ends behind one interface: generate(prompt) -> LLMResponse.
#
# Selection is explicit: callers build a provider per run with
# create_provider(model_id). There is no process-wide "active model".

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Literal

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from pydantic import BaseModel

from careloop import config
from careloop.errors import ProviderError
from careloop.models import LLMResponse, TokenUsage

logger = logging.getLogger(__name__)

ProviderName = Literal["openai", "openrouter", "groq", "gemini", "anthropic"]

_RATE_LIMIT_MARKERS = ("429", "quota", "Too Many Requests")


class ModelConfig(BaseModel):
    provider: ProviderName
    model_id: str
    api_key_env: str
    base_url: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096

    def api_key(self) -> str:
        return config.api_key(self.api_key_env)


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "openai-gpt-4o-mini": ModelConfig(
        provider="openai", model_id="gpt-4o-mini", api_key_env="OPENAI_API_KEY"
    ),
    "openai-gpt-4o": ModelConfig(
        provider="openai", model_id="gpt-4o", api_key_env="OPENAI_API_KEY"
    ),
    "openrouter-claude-3.5-haiku": ModelConfig(
        provider="openrouter",
        model_id="anthropic/claude-3.5-haiku",
        api_key_env="OPENROUTER_API_KEY",
        base_url="https://openrouter.ai/api/v1",
    ),
    "groq-llama-3.3-70b": ModelConfig(
        provider="groq",
        model_id="llama-3.3-70b-versatile",
        api_key_env="GROQ_API_KEY",
        base_url="https://api.groq.com/openai/v1",
    ),
    "groq-llama-3.1-8b": ModelConfig(
        provider="groq",
        model_id="llama-3.1-8b-instant",
        api_key_env="GROQ_API_KEY",
        base_url="https://api.groq.com/openai/v1",
    ),
    "gemini-2.0-flash": ModelConfig(
        provider="gemini",
        model_id="gemini-2.0-flash",
        api_key_env="GEMINI_API_KEY",
        base_url="https://generativelanguage.googleapis.com/v1beta/openai/",
        max_tokens=8192,
    ),
    "claude-3-haiku": ModelConfig(
        provider="anthropic",
        model_id="claude-3-haiku-20240307",
        api_key_env="ANTHROPIC_API_KEY",
    ),
}


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class TextGenerator(ABC):
    """A model back-end. Subclasses implement _complete() only."""

    def __init__(self, model_config: ModelConfig) -> None:
        self.config = model_config

    @property
    def model(self) -> str:
        return self.config.model_id

    @abstractmethod
    async def _complete(
        self, prompt: str, system_prompt: str | None
    ) -> tuple[str, TokenUsage | None]: ...

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LLMResponse:
        start = time.monotonic()
        try:
            content, usage = await self._complete(prompt, system_prompt)
        except ProviderError:
            raise
        except Exception as exc:
            error = self._classify(exc)
            logger.error("%s generation failed: %s", self.config.provider, error)
            raise error from exc

        latency_ms = int((time.monotonic() - start) * 1000)
        logger.debug(
            "%s/%s responded in %dms (%s)",
            self.config.provider,
            self.model,
            latency_ms,
            (metadata or {}).get("span_name", "generate"),
        )
        return LLMResponse(
            content=content,
            model=self.model,
            provider=self.config.provider,
            latency_ms=latency_ms,
            token_usage=usage,
        )

    def _classify(self, exc: Exception) -> ProviderError:
        message = str(exc) or type(exc).__name__
        if any(marker in message for marker in _RATE_LIMIT_MARKERS):
            return self._rate_limited()
        return ProviderError(message, provider=self.config.provider)

    def _rate_limited(self) -> ProviderError:
        return ProviderError(
            f"Rate limit exceeded for {self.model}. Please wait and try again.",
            retryable=True,
            status_code=429,
            provider=self.config.provider,
        )

    async def aclose(self) -> None:
        """Release any client this provider created."""


# ---------------------------------------------------------------------------
# OpenAI-compatible back-ends (OpenAI, OpenRouter, Groq, Gemini)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(TextGenerator):
    def __init__(
        self,
        model_config: ModelConfig,
        api_key: str,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(model_config)
        self._owns_client = client is None
        self._client = client or AsyncOpenAI(
            base_url=model_config.base_url,
            api_key=api_key,
            timeout=config.REQUEST_TIMEOUT,
            max_retries=0,
        )

    async def _complete(
        self, prompt: str, system_prompt: str | None
    ) -> tuple[str, TokenUsage | None]:
        messages: list[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
        )
        content = (response.choices[0].message.content or "").strip() if response.choices else ""
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        return content, usage

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.RateLimitError):
            return self._rate_limited()
        if isinstance(exc, openai.APIStatusError):
            return ProviderError(
                f"{self.config.provider} API error: {exc.status_code} - {exc.message}",
                retryable=exc.status_code >= 500,
                status_code=exc.status_code,
                provider=self.config.provider,
            )
        if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
            return ProviderError(
                f"{self.config.provider} unreachable: {exc}",
                retryable=True,
                provider=self.config.provider,
            )
        return super()._classify(exc)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------


class AnthropicProvider(TextGenerator):
    def __init__(
        self,
        model_config: ModelConfig,
        api_key: str,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(model_config)
        self._owns_client = client is None
        self._client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=model_config.base_url,
            timeout=config.REQUEST_TIMEOUT,
            max_retries=0,
        )

    async def _complete(
        self, prompt: str, system_prompt: str | None
    ) -> tuple[str, TokenUsage | None]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        response = await self._client.messages.create(**kwargs)
        content = "".join(block.text for block in response.content if block.type == "text")
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            )
        return content.strip(), usage

    def _classify(self, exc: Exception) -> ProviderError:
        if isinstance(exc, anthropic.RateLimitError):
            return self._rate_limited()
        if isinstance(exc, anthropic.APIStatusError):
            return ProviderError(
                f"Anthropic API error: {exc.status_code} - {exc.message}",
                retryable=exc.status_code >= 500,
                status_code=exc.status_code,
                provider="anthropic",
            )
        if isinstance(exc, (anthropic.APITimeoutError, anthropic.APIConnectionError)):
            return ProviderError(f"anthropic unreachable: {exc}", retryable=True, provider="anthropic")
        return super()._classify(exc)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(
    model_id: str | None = None,
    api_key: str | None = None,
    client: Any = None,
) -> TextGenerator:
    """
    Build a provider for `model_id` (default: config.DEFAULT_MODEL).

    `client` lets callers share one transport client across concurrent runs.
    Raises ValueError for unknown models and ProviderError when no key is set.
    """
    model_id = model_id or config.DEFAULT_MODEL
    model_config = MODEL_CONFIGS.get(model_id)
    if model_config is None:
        raise ValueError(f"Unknown model: {model_id}. Available: {', '.join(MODEL_CONFIGS)}")

    key = api_key or model_config.api_key()
    if not key:
        raise ProviderError(
            f"API key not configured for {model_config.provider}. Set {model_config.api_key_env}.",
            provider=model_config.provider,
        )

    if model_config.provider == "anthropic":
        return AnthropicProvider(model_config, key, client=client)
    return OpenAICompatibleProvider(model_config, key, client=client)


def available_models() -> list[str]:
    """Models whose API key is present in the environment."""
    return [name for name, cfg in MODEL_CONFIGS.items() if cfg.api_key()]
