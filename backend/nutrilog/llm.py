"""
LLM Integration
Handles communication with the configured LLMs via the OpenRouter chat completions API
"""

import asyncio
import json
import logging
from typing import Optional

import httpx

from config import (
    OPENROUTER_API_KEY,
    OPENROUTER_BASE_URL,
    CHAT_MODEL,
    LLM_TEMPERATURE,
    LLM_MAX_TOKENS,
    LLM_TIMEOUT,
    LLM_MAX_RETRIES
)

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Base exception for LLM-related errors"""
    pass


class RateLimitError(LLMError):
    """Raised when API rate limit is hit"""
    pass


class APIError(LLMError):
    """Raised for general API errors"""
    pass


def _headers() -> dict:
    if not OPENROUTER_API_KEY:
        raise APIError(
            "OpenRouter API key not found. "
            "Please set OPENROUTER_API_KEY in your .env file."
        )
    return {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
        "HTTP-Referer": "https://nutrilog.app",
        "X-Title": "NutriLog Assistant"
    }


async def _post_completion(payload: dict, timeout: int) -> dict:
    """POST a chat completion with retry logic, returning the first choice's message"""
    headers = _headers()
    last_error = None

    for attempt in range(LLM_MAX_RETRIES):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    OPENROUTER_BASE_URL,
                    headers=headers,
                    json=payload
                )

                if response.status_code == 429:
                    retry_after = int(response.headers.get("Retry-After", 2 ** attempt))
                    if attempt < LLM_MAX_RETRIES - 1:
                        await asyncio.sleep(retry_after)
                        continue
                    raise RateLimitError(
                        f"Rate limited. Please try again in {retry_after} seconds."
                    )

                if response.status_code != 200:
                    error_detail = response.text
                    try:
                        error_json = response.json()
                        error_detail = error_json.get("error", {}).get("message", error_detail)
                    except ValueError:
                        pass
                    raise APIError(f"API error ({response.status_code}): {error_detail}")

                data = response.json()

                if "choices" not in data or len(data["choices"]) == 0:
                    raise APIError("Invalid API response: no choices returned")

                return data["choices"][0].get("message", {}) or {}

        except httpx.TimeoutException:
            last_error = APIError(f"Request timed out after {timeout} seconds")
            if attempt < LLM_MAX_RETRIES - 1:
                await asyncio.sleep(2 ** attempt)
                continue

        except httpx.RequestError as e:
            last_error = APIError(f"Network error: {str(e)}")
            if attempt < LLM_MAX_RETRIES - 1:
                await asyncio.sleep(2 ** attempt)
                continue

    if last_error:
        raise last_error
    raise APIError("Failed to get response after multiple attempts")


async def call_llm_async(
    messages: list[dict],
    model: str = CHAT_MODEL,
    temperature: float = LLM_TEMPERATURE,
    max_tokens: int = LLM_MAX_TOKENS,
    timeout: int = LLM_TIMEOUT,
    response_format: Optional[dict] = None
) -> str:
    """Call the configured LLM and return the text content"""
    payload = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens
    }
    if response_format:
        payload["response_format"] = response_format

    message = await _post_completion(payload, timeout)
    content = message.get("content", "")

    if not content:
        raise APIError("Empty response from API")

    return content


async def call_llm_json_async(
    messages: list[dict],
    model: str = CHAT_MODEL,
    temperature: float = 0.0,
    max_tokens: int = LLM_MAX_TOKENS,
    timeout: int = LLM_TIMEOUT
) -> dict:
    """Call the LLM in JSON mode and decode the object it returns"""
    content = await call_llm_async(
        messages,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        response_format={"type": "json_object"}
    )
    try:
        return json.loads(extract_json_block(content))
    except json.JSONDecodeError as e:
        raise APIError(f"Model returned invalid JSON: {e}") from e


async def call_llm_with_tools_async(
    messages: list[dict],
    tools: list[dict],
    model: str = CHAT_MODEL,
    temperature: float = LLM_TEMPERATURE,
    max_tokens: int = LLM_MAX_TOKENS,
    timeout: int = LLM_TIMEOUT
) -> dict:
    """
    Call the LLM with function-calling enabled.
    Returns the raw assistant message (may carry `tool_calls` instead of content).
    """
    payload = {
        "model": model,
        "messages": messages,
        "tools": tools,
        "tool_choice": "auto",
        "temperature": temperature,
        "max_tokens": max_tokens
    }
    return await _post_completion(payload, timeout)


def extract_json_block(content: str) -> str:
    """Strip markdown code fences some models wrap around JSON output"""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()
