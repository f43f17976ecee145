"""Thin async OpenAI wrapper for the extraction passes.

One call, one timeout, no hidden retries: the SDK's own retry loop is disabled
so the attempt strategies in ``attempts.py`` stay the single place where
retry and fallback policy lives.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from dossier_ocr.errors import LLMCallError
from dossier_ocr.utils.logging_utils import structured_log

LOG = logging.getLogger("llm")


class OpenAIChatClient:
    def __init__(self, *, api_key: Optional[str] = None, client: AsyncOpenAI | None = None) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)

    async def complete(
        self,
        *,
        model: str,
        system: str,
        user: str,
        timeout: float,
        json_mode: bool = False,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": 0,
            "timeout": timeout,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            completion = await self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as exc:
            raise LLMCallError(f"{model} timed out after {timeout:.0f}s") from exc
        except openai.OpenAIError as exc:
            raise LLMCallError(f"{model} call failed: {exc}") from exc
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise LLMCallError(f"{model} returned empty content")
        structured_log(LOG, logging.DEBUG, "llm_call_complete", model=model, chars=len(content))
        return content


__all__ = ["OpenAIChatClient"]
