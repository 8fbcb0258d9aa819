"""
Shared OpenAI GPT helper for the generation pipeline.

Used by:
  - question_generator.py  (one call per chunk attempt)

Model: gpt-4o-mini  (override with OPENAI_QCM_MODEL or GPT_MODEL, e.g. "gpt-4o")

Every call is bounded by a hard timeout and every failure surfaces as a
generation.errors.ModelError subclass, so callers never see openai or
asyncio exception types.
"""

import asyncio
import os
from typing import Optional

import openai
from openai import AsyncOpenAI

from generation.errors import ModelEmptyResponseError, ModelTimeoutError, ModelUnavailableError

# ── Model config ───────────────────────────────────────────────────────────────
GPT_MODEL = os.getenv("OPENAI_QCM_MODEL") or os.getenv("GPT_MODEL", "gpt-4o-mini")
GPT_TIMEOUT_SECONDS = float(os.getenv("GPT_TIMEOUT_SECONDS", "30"))

# Lazy singleton
_client: Optional[AsyncOpenAI] = None


def _get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ModelUnavailableError(
                "OPENAI_API_KEY is not set. Add it to your .env file."
            )
        # Retries are handled by the question generator
        _client = AsyncOpenAI(api_key=api_key, max_retries=0)
    return _client


async def call_gpt(
    prompt: str,
    system: str = "You are a helpful academic assistant. Output only what is asked.",
    temperature: float = 0.7,
    max_tokens: int = 2048,
    json_mode: bool = True,
    timeout: float = GPT_TIMEOUT_SECONDS,
) -> str:
    """
    Call OpenAI Chat Completions and return the assistant message text.

    Args:
        prompt:      User-turn message (the actual instruction/question)
        system:      System prompt
        temperature: Sampling temperature (lower = more deterministic)
        max_tokens:  Max response tokens
        json_mode:   Ask the API for a single JSON object
        timeout:     Hard limit in seconds for the whole call

    Returns:
        Raw string content of the model response

    Raises:
        ModelTimeoutError:       the call exceeded `timeout`
        ModelUnavailableError:   missing key, transport or API error
        ModelEmptyResponseError: the model returned no content
    """
    client = _get_client()
    kwargs = {}
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    try:
        response = await asyncio.wait_for(
            client.chat.completions.create(
                model=GPT_MODEL,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs,
            ),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, openai.APITimeoutError) as e:
        raise ModelTimeoutError(f"GPT call timed out after {timeout:.0f}s") from e
    except openai.APIError as e:
        raise ModelUnavailableError(f"GPT call failed: {e}") from e

    if not response.choices:
        raise ModelEmptyResponseError("GPT returned no choices")
    content = response.choices[0].message.content or ""
    if not content.strip():
        raise ModelEmptyResponseError("GPT returned an empty message")
    return content
