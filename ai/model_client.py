"""
Model client abstraction for AI providers.

Every hosted vendor except Anthropic is reached through the OpenAI-compatible
chat completions API with a vendor base URL. Clients return the parsed JSON
object from the model's answer and translate SDK errors into advisor errors,
separating billing/credit exhaustion from ordinary failures.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.exceptions import AdvisorError, AdvisorResponseError, ProviderExhausted

log = logging.getLogger(__name__)

VENDOR_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "xai": "https://api.x.ai/v1",
    "groq": "https://api.groq.com/openai/v1",
    "deepseek": "https://api.deepseek.com",
    "together": "https://api.together.xyz/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "cerebras": "https://api.cerebras.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
}

_EXHAUSTION_MARKERS = (
    "insufficient_quota",
    "insufficient credits",
    "credit balance",
    "billing",
    "payment required",
    "exceeded your current quota",
)

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(provider: str, content: Optional[str]) -> Dict[str, Any]:
    """Pull the first JSON object out of a model answer (plain, fenced or chatty)."""
    if not content:
        raise AdvisorResponseError(provider, "empty response")

    text = content.strip()
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK.search(text)
        if not match:
            raise AdvisorResponseError(provider, f"no JSON object in response: {text[:120]!r}")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise AdvisorResponseError(provider, f"malformed JSON: {exc}", exc)

    if not isinstance(parsed, dict):
        raise AdvisorResponseError(provider, "response JSON is not an object")
    return parsed


def is_exhaustion_error(exc: Exception) -> bool:
    """True for billing/credit failures (HTTP 402 or quota wording)."""
    if getattr(exc, "status_code", None) == 402:
        return True
    code = getattr(exc, "code", None)
    if code == "insufficient_quota":
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _EXHAUSTION_MARKERS)


def translate_error(provider: str, exc: Exception) -> AdvisorError:
    if isinstance(exc, AdvisorError):
        return exc
    if is_exhaustion_error(exc):
        return ProviderExhausted(provider, str(exc), exc)
    return AdvisorError(provider, f"{type(exc).__name__}: {exc}", exc)


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    provider: str = "unknown"
    model: str = "unknown"

    @abstractmethod
    async def complete(self, system_prompt: str, user_prompt: str, timeout: float) -> Dict[str, Any]:
        """
        Ask the model and return its JSON answer.

        Raises:
            ProviderExhausted: On billing/credit exhaustion
            AdvisorResponseError: When the answer is not a JSON object
            AdvisorError: On any other API or transport failure
        """


class OpenAICompatibleClient(ModelClient):
    """Chat completions client for OpenAI and OpenAI-compatible vendors."""

    def __init__(
        self,
        api_key: str,
        model: str,
        vendor: str = "openai",
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 800,
    ):
        from openai import AsyncOpenAI

        self.provider = vendor
        self.model = model
        self.base_url = base_url or VENDOR_BASE_URLS.get(vendor, VENDOR_BASE_URLS["openai"])
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = AsyncOpenAI(api_key=api_key, base_url=self.base_url, max_retries=0)

    async def complete(self, system_prompt: str, user_prompt: str, timeout: float) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"{self.provider}/{self.model} call failed after {elapsed*1000:.1f}ms: {e}")
            raise translate_error(self.provider, e)

        elapsed = time.perf_counter() - start
        log.debug(f"{self.provider}/{self.model} call completed in {elapsed*1000:.1f}ms")
        if not response.choices:
            raise AdvisorResponseError(self.provider, "no choices in response")
        return extract_json(self.provider, response.choices[0].message.content)


class AnthropicClient(ModelClient):
    """Anthropic Claude client implementation."""

    def __init__(self, api_key: str, model: str = "claude-3-5-sonnet-20241022", max_tokens: int = 800):
        from anthropic import AsyncAnthropic

        self.provider = "anthropic"
        self.model = model
        self.max_tokens = max_tokens
        self.client = AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(self, system_prompt: str, user_prompt: str, timeout: float) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.3,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
                timeout=timeout,
            )
        except Exception as e:
            elapsed = time.perf_counter() - start
            log.error(f"anthropic/{self.model} call failed after {elapsed*1000:.1f}ms: {e}")
            raise translate_error(self.provider, e)

        text = "".join(getattr(block, "text", "") for block in response.content)
        return extract_json(self.provider, text)


MockResponder = Callable[[str, str], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class MockClient(ModelClient):
    """Scripted client for tests and DRY_RUN rosters."""

    def __init__(
        self,
        fixed_response: Optional[Dict[str, Any]] = None,
        responder: Optional[MockResponder] = None,
        error: Optional[Exception] = None,
        provider: str = "mock",
    ):
        self.provider = provider
        self.model = "mock"
        self.fixed_response = fixed_response
        self.responder = responder
        self.error = error
        self.calls = 0

    async def complete(self, system_prompt: str, user_prompt: str, timeout: float) -> Dict[str, Any]:
        self.calls += 1
        if self.error is not None:
            raise translate_error(self.provider, self.error)
        if self.responder is not None:
            result = self.responder(system_prompt, user_prompt)
            if hasattr(result, "__await__"):
                result = await result
            return result
        if self.fixed_response is not None:
            return dict(self.fixed_response)
        return {"action": "HOLD", "confidence": 0.5, "reasoning": "mock default", "loss_probability": 50}


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: Any key of VENDOR_BASE_URLS, "anthropic", or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        **kwargs: base_url override, or fixed_response for the mock

    Raises:
        ValueError: If provider is unknown or a hosted provider lacks an api key
    """
    provider = provider.lower()

    if provider == "mock":
        return MockClient(fixed_response=kwargs.get("fixed_response"), provider=kwargs.get("name", "mock"))

    if provider == "anthropic":
        if not api_key:
            raise ValueError("anthropic requires api_key")
        return AnthropicClient(api_key=api_key, model=model or "claude-3-5-sonnet-20241022")

    if provider in VENDOR_BASE_URLS or kwargs.get("base_url"):
        if not api_key:
            raise ValueError(f"{provider} requires api_key")
        if not model:
            raise ValueError(f"{provider} requires a model name")
        return OpenAICompatibleClient(
            api_key=api_key,
            model=model,
            vendor=provider,
            base_url=kwargs.get("base_url"),
        )

    known = ", ".join(sorted(list(VENDOR_BASE_URLS) + ["anthropic", "mock"]))
    raise ValueError(f"Unknown provider: {provider}. Use one of: {known}")
