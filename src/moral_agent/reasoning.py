# reasoning.py
# Reasoning backend client (OpenAI SDK against OpenRouter).
#
# Contract: transient failures (429 / 5xx / connection) are retried with a
# fixed backoff; exhausted retries and other errors return None, never
# raise. An authentication failure flips a permanent "unavailable" flag
# that the supervisor checks before every cycle.

import json
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

import openai
from openai import OpenAI

from moral_agent.models import ReasoningResult, TokenUsage, ToolCall

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransientBackendError(Exception):
    """Rate limit, overload or server error. Retried, then a cycle failure."""


class FatalBackendError(Exception):
    """Authentication failure. Disables every future call until restart."""


def classify(exc: Exception) -> Exception:
    """Map an SDK exception onto the backend error taxonomy."""
    if isinstance(exc, openai.AuthenticationError):
        return FatalBackendError(str(exc))
    if isinstance(exc, (openai.RateLimitError, openai.InternalServerError, openai.APIConnectionError)):
        return TransientBackendError(str(exc))
    if isinstance(exc, openai.APIStatusError) and (exc.status_code == 529 or exc.status_code >= 500):
        return TransientBackendError(str(exc))
    return exc


# ---------------------------------------------------------------------------
# ReasoningClient
# ---------------------------------------------------------------------------


class ReasoningClient:
    """
    Thin retrying wrapper around chat completions.

    Example:
        client = ReasoningClient(api_key=key, model="anthropic/claude-opus-4.1")
        result = client.reason(founding_document, briefing, max_tokens=16384)
    """

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        base_url: str = OPENROUTER_BASE_URL,
        attempts: int = 3,
        backoff_s: Sequence[float] = (2.0, 4.0, 8.0),
        temperature: float = 1.0,
        client: OpenAI | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self._attempts = attempts
        self._backoff_s = tuple(backoff_s)
        self._temperature = temperature
        self._sleep = sleep
        self._fatal = False
        if client is None and api_key:
            client = OpenAI(base_url=base_url, api_key=api_key, max_retries=0)
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None and not self._fatal

    # ------------------------------------------------------------------
    # Public calls
    # ------------------------------------------------------------------

    def reason(self, system_prompt: str, user_message: str, max_tokens: int) -> ReasoningResult | None:
        """Single-turn completion for the main awakening step."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ]
        return self.converse(messages, max_tokens=max_tokens)

    def converse(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        tools: list[dict[str, Any]] | None = None,
    ) -> ReasoningResult | None:
        """Completion over a full message list, optionally with a tool surface."""
        if not self.available:
            logger.error("Reasoning unavailable — client not initialized or fatal error")
            return None

        try:
            response = self._create_with_retry(messages, max_tokens, tools)
        except FatalBackendError as exc:
            logger.error(
                "Fatal: authentication failed. Stopping all future reasoning.",
                extra={"data": {"error": str(exc)}},
            )
            self._fatal = True
            return None
        except TransientBackendError as exc:
            logger.error("Reasoning retries exhausted", extra={"data": {"error": str(exc)}})
            return None
        except openai.OpenAIError as exc:
            logger.error("Reasoning API call failed", extra={"data": {"error": str(exc)}})
            return None

        return _to_result(response)

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _create_with_retry(self, messages: list[dict[str, Any]], max_tokens: int, tools: list[dict[str, Any]] | None):
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self._temperature,
        }
        if tools:
            kwargs["tools"] = tools

        for attempt in range(self._attempts):
            try:
                return self._client.chat.completions.create(**kwargs)
            except openai.OpenAIError as exc:
                error = classify(exc)
                if error is exc:
                    raise
                if isinstance(error, FatalBackendError) or attempt == self._attempts - 1:
                    raise error from exc
                delay = self._backoff_s[min(attempt, len(self._backoff_s) - 1)]
                logger.warning(
                    f"Retryable error, attempt {attempt + 1}/{self._attempts}",
                    extra={"data": {"error": str(exc), "retry_in_s": delay}},
                )
                self._sleep(delay)

        raise TransientBackendError("no attempts configured")


def _to_result(response) -> ReasoningResult:
    choice = response.choices[0]
    message = choice.message

    tool_calls: list[ToolCall] = []
    for call in message.tool_calls or []:
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        tool_calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments))

    usage = response.usage
    return ReasoningResult(
        text=(message.content or "").strip(),
        usage=TokenUsage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        ),
        stop_reason=choice.finish_reason,
        tool_calls=tool_calls,
    )
