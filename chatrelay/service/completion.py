from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol

import openai
from openai import OpenAI

from chatrelay.config import CompletionBackend, Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import UpstreamError

logger = get_logger(__name__)

Message = Dict[str, str]

UPSTREAM_UNAVAILABLE = "completion service unavailable"


class CompletionClient(Protocol):
    """Stateless request/response wrapper over a chat completion API."""

    async def complete(self, messages: List[Message]) -> str: ...


class OpenAICompletionClient:
    """Chat completions through the OpenAI SDK, bounded by an explicit timeout."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        temperature: float = 1.0,
        max_tokens: int = 256,
        timeout_seconds: float = 30.0,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self.client = client or OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
        )

    def _create(self, messages: List[Message]) -> str:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice or not first_choice.message.content:
            logger.warning("completion_empty", model=self.model)
            raise UpstreamError(UPSTREAM_UNAVAILABLE)
        return first_choice.message.content

    async def complete(self, messages: List[Message]) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._create, messages),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "completion_failed",
                model=self.model,
                error_type="timeout",
                timeout_seconds=self.timeout_seconds,
            )
            raise UpstreamError(UPSTREAM_UNAVAILABLE) from exc
        except openai.OpenAIError as exc:
            logger.error(
                "completion_failed",
                model=self.model,
                error_type=type(exc).__name__,
            )
            raise UpstreamError(UPSTREAM_UNAVAILABLE) from exc


class StubCompletionClient:
    """Deterministic completion client for tests and local development.

    Every request is recorded in ``requests``; ``fail_with`` makes the next
    calls raise ``UpstreamError``.
    """

    STUB_RESPONSE = "This is a stubbed assistant reply."

    def __init__(self, reply: Optional[str] = None) -> None:
        self.reply = reply or self.STUB_RESPONSE
        self.requests: List[List[Message]] = []
        self.fail_with: Optional[Exception] = None

    async def complete(self, messages: List[Message]) -> str:
        self.requests.append([dict(message) for message in messages])
        if self.fail_with is not None:
            logger.error("completion_failed", model="stub", error_type=type(self.fail_with).__name__)
            raise UpstreamError(UPSTREAM_UNAVAILABLE) from self.fail_with
        return self.reply


def build_completion_client(settings: Settings) -> CompletionClient:
    if settings.completion_backend == CompletionBackend.STUB:
        return StubCompletionClient()
    return OpenAICompletionClient(
        api_key=settings.openai_api_key or "",
        model=settings.completion_model,
        base_url=settings.openai_base_url,
        temperature=settings.completion_temperature,
        max_tokens=settings.completion_max_tokens,
        timeout_seconds=settings.completion_timeout_seconds,
    )
