"""LLM provider for agentmarket.

Supports the Anthropic Messages API and OpenRouter chat completions. Calls
that fail, or JSON replies that cannot be parsed, are retried a bounded
number of times before raising ``ExternalServiceError``.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Optional
import httpx
import structlog

from .config import get_settings
from .errors import ExternalServiceError

logger = structlog.get_logger()

RETRY_DELAY_SECONDS = 0.5
ANTHROPIC_VERSION = "2023-06-01"
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


@dataclass
class LLMResponse:
    """Standardized LLM response."""
    content: str
    tokens_input: int
    tokens_output: int
    model: str
    latency_ms: float


async def call_anthropic(
    prompt: str,
    system_prompt: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
    model: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMResponse:
    """Call the Anthropic Messages API."""
    settings = get_settings()
    start_time = time.time()
    model_id = model or settings.anthropic_model

    body: dict[str, Any] = {
        "model": model_id,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_prompt:
        body["system"] = system_prompt

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.post(
            f"{settings.anthropic_base_url.rstrip('/')}/v1/messages",
            headers={
                "x-api-key": settings.anthropic_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            json=body,
            timeout=settings.llm_timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()

    latency_ms = (time.time() - start_time) * 1000
    text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")

    return LLMResponse(
        content=text,
        tokens_input=data.get("usage", {}).get("input_tokens", 0),
        tokens_output=data.get("usage", {}).get("output_tokens", 0),
        model=model_id,
        latency_ms=latency_ms,
    )


async def call_openrouter(
    prompt: str,
    system_prompt: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
    model: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMResponse:
    """Call OpenRouter's OpenAI-compatible chat completions endpoint."""
    settings = get_settings()
    start_time = time.time()
    model_id = model or settings.openrouter_model

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    async with httpx.AsyncClient(transport=transport) as client:
        response = await client.post(
            OPENROUTER_URL,
            headers={
                "Authorization": f"Bearer {settings.openrouter_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": model_id,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            timeout=settings.llm_timeout_seconds,
        )
        response.raise_for_status()
        data = response.json()

    latency_ms = (time.time() - start_time) * 1000

    return LLMResponse(
        content=data["choices"][0]["message"]["content"] or "",
        tokens_input=data.get("usage", {}).get("prompt_tokens", 0),
        tokens_output=data.get("usage", {}).get("completion_tokens", 0),
        model=model_id,
        latency_ms=latency_ms,
    )


PROVIDERS = {
    "anthropic": call_anthropic,
    "openrouter": call_openrouter,
}


async def call_llm(
    prompt: str,
    system_prompt: Optional[str] = None,
    temperature: float = 0.7,
    max_tokens: int = 2048,
    provider: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMResponse:
    """Call the configured provider, retrying transport and HTTP errors."""
    settings = get_settings()
    provider = provider or settings.llm_provider
    call = PROVIDERS.get(provider)
    if call is None:
        raise ExternalServiceError(f"Unknown LLM provider: {provider}")

    attempts = settings.llm_max_retries + 1
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            response = await call(
                prompt=prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                max_tokens=max_tokens,
                transport=transport,
            )
            logger.debug(
                "llm_call_complete",
                provider=provider,
                model=response.model,
                latency_ms=round(response.latency_ms),
                tokens_output=response.tokens_output,
            )
            return response
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            last_error = e
            logger.warning("llm_call_failed", provider=provider, attempt=attempt, error=str(e))
            if attempt < attempts:
                await asyncio.sleep(RETRY_DELAY_SECONDS * attempt)

    raise ExternalServiceError(f"LLM call to {provider} failed after {attempts} attempts: {last_error}")


def extract_json(content: str) -> Optional[Any]:
    """Parse JSON from a model reply, tolerating code fences and prose."""
    content = content.strip()

    # Remove markdown code blocks
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    # Try to find JSON in response
    json_match = re.search(r'\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}', content, re.DOTALL)
    if json_match:
        try:
            return json.loads(json_match.group())
        except json.JSONDecodeError:
            pass

    return None


async def call_llm_json(
    prompt: str,
    system_prompt: Optional[str] = None,
    temperature: float = 0.3,
    max_tokens: int = 2048,
    provider: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Call the LLM and parse a JSON object from its reply.

    Unparseable replies are retried like failed calls.
    """
    settings = get_settings()
    json_system = (system_prompt or "") + "\n\nRespond with valid JSON only. No markdown or explanation."

    attempts = settings.llm_max_retries + 1
    for attempt in range(1, attempts + 1):
        response = await call_llm(
            prompt=prompt,
            system_prompt=json_system.strip(),
            temperature=temperature,
            max_tokens=max_tokens,
            provider=provider,
            transport=transport,
        )
        parsed = extract_json(response.content)
        if isinstance(parsed, dict):
            return parsed
        logger.warning("json_parse_failed", attempt=attempt, content_preview=response.content[:200])

    raise ExternalServiceError(f"LLM returned no usable JSON after {attempts} attempts")
