"""
Provider Adapters

The transport boundary between the Apex Loop and model backends. Every
adapter hides its own wire protocol behind `invoke()`; the loop treats them
all the same.

Example:
    from apexcore import ApexLoop
    from apexcore.providers import LiteLLMProvider

    # Auto-detects API keys from the environment
    loop = ApexLoop(adapter=LiteLLMProvider(temperature=0.2))

    # Any OpenAI-compatible endpoint (OpenRouter, vLLM, Ollama...)
    adapter = OpenAICompatibleProvider(base_url="https://openrouter.ai/api/v1")
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .errors import TransportError

logger = logging.getLogger("apexcore.providers")


@dataclass
class RawResponse:
    """
    An unvalidated provider response.

    Attributes:
        text: Raw completion text (may contain <think> blocks or code fences)
        data: Already-structured output, when the backend returns one
        model: The model that actually answered
        latency_ms: Wall time of the call
    """
    text: str = ""
    data: Any = None
    model: str = ""
    latency_ms: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def payload(self) -> Any:
        """The value handed to schema validation."""
        return self.data if self.data is not None else self.text


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Protocol for provider transports.

    Implementations raise TransportError (or any exception) on failure;
    the Apex Loop enforces the timeout itself and classifies the error.

    Example:
        class EchoProvider:
            async def invoke(self, provider_id, prompt, timeout, system=None):
                return RawResponse(text='{"answer": 42}', model=provider_id)
    """

    async def invoke(
        self,
        provider_id: str,
        prompt: str,
        timeout: float,
        system: Optional[str] = None
    ) -> RawResponse:
        ...


class CallableProvider:
    """
    Adapts a plain async function into a ProviderAdapter.

    Example:
        async def fake(provider_id, prompt):
            return '{"summary": "ok"}'

        adapter = CallableProvider(fake)
    """

    def __init__(self, fn: Callable[[str, str], Awaitable[Any]]):
        self.fn = fn

    async def invoke(self, provider_id: str, prompt: str, timeout: float, system: Optional[str] = None) -> RawResponse:
        started = time.perf_counter()
        result = await self.fn(provider_id, prompt)
        if isinstance(result, RawResponse):
            return result
        latency = (time.perf_counter() - started) * 1000
        if isinstance(result, str):
            return RawResponse(text=result, model=provider_id, latency_ms=latency)
        return RawResponse(data=result, model=provider_id, latency_ms=latency)


def prepare_prompt_for_model(prompt: str, model_id: str) -> str:
    """
    Adapt instructions for different model families.

    Gemma and Llama models get an explicit context/instruction wrapper and a
    JSON-only reminder; DeepSeek models are asked to reason before answering
    (their <think> block is stripped during validation).
    """
    lowered = model_id.lower()

    if "gemma" in lowered or "llama" in lowered:
        return (
            "<context>\nYou are a specialized agent in the simulation swarm.\n</context>\n"
            f"<instruction>\n{prompt}\n</instruction>\n"
            "Final response must be valid JSON only."
        )

    if "deepseek" in lowered:
        return f"{prompt}\n\nShow your step-by-step reasoning before providing the final JSON in a code block."

    return prompt


def _build_messages(prompt: str, system: Optional[str]) -> List[Dict[str, str]]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


def _ratelimit_headers(response) -> Dict[str, str]:
    """x-ratelimit-* headers LiteLLM forwards from the upstream provider."""
    hidden = getattr(response, "_hidden_params", None) or {}
    headers = hidden.get("additional_headers") or {}
    return {k: v for k, v in headers.items() if "x-ratelimit-" in str(k).lower()}


class LiteLLMProvider:
    """
    Provider adapter using LiteLLM.

    Supports 100+ models from OpenAI, Anthropic, Google, Groq, OpenRouter,
    Ollama and more; the ladder's provider id is the LiteLLM model string.

    Args:
        temperature: Sampling temperature (0.0-2.0)
        max_tokens: Maximum tokens in response
        adapt_prompts: If True, apply per-family prompt adaptation
        **kwargs: Additional LiteLLM parameters

    Environment Variables:
        GEMINI_API_KEY, GROQ_API_KEY, OPENROUTER_API_KEY, OPENAI_API_KEY...
        See LiteLLM docs for full list
    """

    def __init__(
        self,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        adapt_prompts: bool = True,
        **kwargs: Any
    ):
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.adapt_prompts = adapt_prompts
        self.kwargs = kwargs

    async def invoke(self, provider_id: str, prompt: str, timeout: float, system: Optional[str] = None) -> RawResponse:
        import litellm

        if self.adapt_prompts:
            prompt = prepare_prompt_for_model(prompt, provider_id)

        started = time.perf_counter()
        try:
            response = await litellm.acompletion(
                model=provider_id,
                messages=_build_messages(prompt, system),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=timeout,
                **self.kwargs
            )
        except Exception as e:
            logger.error(f"LiteLLM error ({provider_id}): {e}")
            raise TransportError(str(e), provider_id=provider_id, status_code=getattr(e, "status_code", None)) from e

        latency = (time.perf_counter() - started) * 1000
        usage = getattr(response, "usage", None)
        return RawResponse(
            text=response.choices[0].message.content or "",
            model=getattr(response, "model", provider_id),
            latency_ms=latency,
            metadata={
                "finish_reason": response.choices[0].finish_reason,
                "input_tokens": getattr(usage, "prompt_tokens", None),
                "output_tokens": getattr(usage, "completion_tokens", None),
                "ratelimit": _ratelimit_headers(response),
            }
        )

    def __repr__(self) -> str:
        return f"LiteLLMProvider(temperature={self.temperature})"


class OpenAICompatibleProvider:
    """
    Provider adapter for any OpenAI-compatible chat completions endpoint.

    Defaults to OpenRouter, where the ladder's provider id is the model slug
    (e.g. "deepseek/deepseek-r1"). A leading "openrouter/" prefix is dropped.

    Args:
        base_url: API base URL
        api_key: API key (defaults to OPENROUTER_API_KEY)
        max_tokens: Maximum tokens in response
        extra_headers: Headers sent with every request
    """

    def __init__(
        self,
        base_url: str = "https://openrouter.ai/api/v1",
        api_key: Optional[str] = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        extra_headers: Optional[Dict[str, str]] = None,
        adapt_prompts: bool = True
    ):
        import openai

        self.client = openai.AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or os.environ.get("OPENROUTER_API_KEY", "")
        )
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.extra_headers = extra_headers or {}
        self.adapt_prompts = adapt_prompts

    async def invoke(self, provider_id: str, prompt: str, timeout: float, system: Optional[str] = None) -> RawResponse:
        import openai

        model = provider_id.split("/", 1)[1] if provider_id.startswith("openrouter/") else provider_id
        if self.adapt_prompts:
            prompt = prepare_prompt_for_model(prompt, model)

        started = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=_build_messages(prompt, system),
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=timeout,
                extra_headers=self.extra_headers
            )
        except openai.APIStatusError as e:
            raise TransportError(str(e), provider_id=provider_id, status_code=e.status_code) from e
        except openai.OpenAIError as e:
            raise TransportError(str(e), provider_id=provider_id) from e

        latency = (time.perf_counter() - started) * 1000
        return RawResponse(
            text=response.choices[0].message.content or "",
            model=response.model or model,
            latency_ms=latency,
            metadata={"finish_reason": response.choices[0].finish_reason}
        )

    def __repr__(self) -> str:
        return f"OpenAICompatibleProvider(base_url={str(self.client.base_url)!r})"
