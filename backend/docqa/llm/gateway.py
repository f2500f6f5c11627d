"""
LLM Gateway — Single Entry Point for Extraction and QA-Generation Calls

  ┌──────────────────────────────────────────────────────────┐
  │  LLMGateway.invoke(prompt, payload?, mime_type?)         │
  │       │                                                  │
  │       ▼                                                  │
  │  build_messages()        ← System + Human (+ inline file)│
  │       │                                                  │
  │       ▼                                                  │
  │  asyncio.wait_for(model.ainvoke)   ← per-attempt timeout │
  │       │                                                  │
  │       ├── retryable (429/5xx/timeout) → backoff + retry  │
  │       ├── auth / exhausted quota      → QuotaOrAuthError │
  │       └── anything else               → LanguageModelError│
  │       │                                                  │
  │       ▼                                                  │
  │  raw response text  (decoded later by ResilientDecoder)  │
  └──────────────────────────────────────────────────────────┘

The service enforces no schema, so the gateway returns plain text and never
tries to parse it.

Inline payloads travel as OpenAI content blocks: images as an ``image_url``
data URI, PDFs as a ``file`` block with base64 ``file_data``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from docqa.core.config import Settings
from docqa.core.errors import (
    LanguageModelError,
    QuotaOrAuthError,
    classify_provider_error,
    is_rate_limit,
)

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 2.0    # seconds; doubled each attempt
RETRY_MAX_DELAY  = 30.0


@dataclass
class GatewayResponse:
    """The result of a single gateway call."""
    content:    str
    model_used: str
    purpose:    str
    attempts:   int
    latency_ms: float


def _build_chat_model(settings: Settings, model: str) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=model,
        api_key=settings.openai_api_key,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        max_retries=0,   # retries are owned by the gateway
    )


def _content_to_text(content: Any) -> str:
    """AIMessage.content may be a str or a list of content blocks."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")


class LLMGateway:
    """
    Provider-agnostic chat model wrapper with timeout, retry and error mapping.

    ``text_model`` serves text-only prompts, ``vision_model`` serves prompts
    that carry an inline document payload.  Both default to ChatOpenAI models
    built from settings; tests inject fakes.
    """

    def __init__(
        self,
        settings:     Settings,
        text_model:   BaseChatModel | None = None,
        vision_model: BaseChatModel | None = None,
    ) -> None:
        self._settings     = settings
        self._text_model   = text_model or _build_chat_model(settings, settings.llm_model)
        self._vision_model = vision_model or (
            text_model if text_model is not None
            else _build_chat_model(settings, settings.llm_vision_model)
        )
        self._timeout     = settings.llm_request_timeout
        self._max_retries = settings.llm_max_retries

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def invoke(
        self,
        prompt:        str,
        *,
        payload:       bytes | None = None,
        mime_type:     str | None   = None,
        system_prompt: str | None   = None,
        purpose:       str          = "generate",
    ) -> GatewayResponse:
        """
        Send one prompt (plus optional inline file) and return the raw text.

        Raises:
            QuotaOrAuthError:   credentials rejected or rate limit never cleared.
            LanguageModelError: any other failure, after retries.
        """
        messages = self.build_messages(prompt, system_prompt, payload, mime_type)
        model    = self._vision_model if payload is not None else self._text_model
        name     = getattr(model, "model_name", None) or type(model).__name__

        t0 = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.wait_for(model.ainvoke(messages), timeout=self._timeout)
                break
            except asyncio.TimeoutError as exc:
                failure: BaseException = exc
                kind = "retryable"
            except Exception as exc:
                failure = exc
                kind = classify_provider_error(exc)

            if kind == "quota_or_auth":
                raise QuotaOrAuthError(
                    f"{type(failure).__name__}: {failure}",
                    detail={"model": name, "purpose": purpose},
                ) from failure

            if kind != "retryable" or attempt > self._max_retries:
                if is_rate_limit(failure):
                    raise QuotaOrAuthError(
                        f"Rate limit not cleared after {attempt} attempts: {failure}",
                        detail={"model": name, "purpose": purpose},
                    ) from failure
                raise LanguageModelError(
                    f"{type(failure).__name__}: {failure}" if str(failure)
                    else f"{type(failure).__name__} after {attempt} attempt(s)",
                    detail={"model": name, "purpose": purpose, "attempts": attempt},
                ) from failure

            delay = min(RETRY_BASE_DELAY * (2 ** (attempt - 1)), RETRY_MAX_DELAY)
            logger.warning(
                "LLMGateway | retryable error purpose=%s attempt=%d/%d delay=%.1fs: %s",
                purpose, attempt, self._max_retries + 1, delay, type(failure).__name__,
            )
            await asyncio.sleep(delay)

        content = _content_to_text(getattr(result, "content", result))
        latency = (time.perf_counter() - t0) * 1000
        logger.info(
            "LLMGateway | model=%s purpose=%s payload_bytes=%d chars_in=%d chars_out=%d "
            "attempts=%d latency_ms=%.1f",
            name, purpose, len(payload or b""), len(prompt), len(content), attempt, latency,
        )
        return GatewayResponse(
            content    = content,
            model_used = name,
            purpose    = purpose,
            attempts   = attempt,
            latency_ms = latency,
        )

    # -----------------------------------------------------------------------
    # Message construction
    # -----------------------------------------------------------------------

    @staticmethod
    def build_messages(
        prompt:        str,
        system_prompt: str | None   = None,
        payload:       bytes | None = None,
        mime_type:     str | None   = None,
    ) -> list[BaseMessage]:
        """
        Build a [SystemMessage, HumanMessage] list.

        With a payload the human message becomes a list of content blocks:
        the prompt text followed by the base64-encoded file.
        """
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))

        if payload is None:
            messages.append(HumanMessage(content=prompt))
            return messages

        mime = mime_type or "application/octet-stream"
        data_uri = f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"
        if mime.startswith("image/"):
            file_block: dict[str, Any] = {"type": "image_url", "image_url": {"url": data_uri}}
        else:
            file_block = {
                "type": "file",
                "file": {"filename": f"document.{mime.rsplit('/', 1)[-1]}", "file_data": data_uri},
            }
        messages.append(HumanMessage(content=[{"type": "text", "text": prompt}, file_block]))
        return messages
