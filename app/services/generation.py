# =============================================
# File: app/services/generation.py
# Purpose: NL -> query translation with OpenAI (streamed JSON) + typed result, plain-text completions
# =============================================
from __future__ import annotations

import json
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import openai
from loguru import logger
from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from .errors import (
    ErrorKind,
    TranslationServiceError,
    TranslationTimeout,
)
from .models import TranslationResult, normalize_confidence

DEFAULT_MODEL = "gpt-4o-mini"
PARSE_ERROR_MESSAGE = "AI service returned an unreadable response"


def _get_settings() -> Dict[str, Any]:
    # Read from env at construction time so tests (and envs) can tune them
    try:
        max_tokens = int(os.getenv("LLM_MAX_TOKENS", "3000"))
    except ValueError:
        max_tokens = 3000
    try:
        timeout_s = float(os.getenv("LLM_TIMEOUT_SECONDS", "50"))
    except ValueError:
        timeout_s = 50.0
    return {
        "model": os.getenv("LLM_MODEL", DEFAULT_MODEL),
        "max_tokens": max_tokens,
        "timeout_s": timeout_s,
    }


class TranslationState(str, Enum):
    IDLE = "IDLE"
    SENDING = "SENDING"
    RECEIVING = "RECEIVING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


_ALLOWED = {
    TranslationState.IDLE: {TranslationState.SENDING, TranslationState.FAILED},
    TranslationState.SENDING: {TranslationState.RECEIVING, TranslationState.COMPLETE, TranslationState.FAILED},
    TranslationState.RECEIVING: {TranslationState.COMPLETE, TranslationState.FAILED},
    TranslationState.COMPLETE: set(),
    TranslationState.FAILED: set(),
}


def parse_translation(text: str, model: Optional[str] = None) -> TranslationResult:
    """
    Parse the accumulated buffer once. Tolerant to small wrappers around the JSON
    (code fences, stray prose); anything unreadable becomes a parse-error result.
    """
    raw = (text or "").strip()
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        return _parse_failure(model)
    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError:
        return _parse_failure(model)
    if not isinstance(data, dict):
        return _parse_failure(model)

    reasoning = data.get("reasoning")
    if isinstance(reasoning, dict):
        # wire confidence is 0-100; normalized exactly once, here
        reasoning = dict(reasoning)
        reasoning["confidence"] = normalize_confidence(reasoning.get("confidence"))
        data["reasoning"] = reasoning
    elif reasoning is not None:
        data["reasoning"] = None

    try:
        result = TranslationResult.model_validate(data)
    except PydanticValidationError:
        return _parse_failure(model)

    result.model = model
    if result.success and not (result.query or "").strip():
        # success without a query is not usable
        result.success = False
        result.error = result.error or "AI service returned no query"
    return result


def _parse_failure(model: Optional[str]) -> TranslationResult:
    return TranslationResult(
        success=False,
        error=PARSE_ERROR_MESSAGE,
        error_kind=ErrorKind.TRANSLATION_PARSE.value,
        model=model,
    )


class TranslationStream:
    """
    Accumulates streamed delta frames for one request.
    IDLE -> SENDING -> RECEIVING -> COMPLETE | FAILED(kind)
    """

    def __init__(self) -> None:
        self.state = TranslationState.IDLE
        self.failure: Optional[ErrorKind] = None
        self.finish_reason: Optional[str] = None
        self._parts: List[str] = []

    def _move(self, to: TranslationState) -> None:
        if to not in _ALLOWED[self.state]:
            raise RuntimeError(f"illegal translation transition {self.state.value} -> {to.value}")
        self.state = to

    def begin(self) -> None:
        self._move(TranslationState.SENDING)

    def feed(self, delta: Optional[str]) -> None:
        if self.state == TranslationState.SENDING:
            self._move(TranslationState.RECEIVING)
        elif self.state != TranslationState.RECEIVING:
            raise RuntimeError(f"cannot accept data in state {self.state.value}")
        if delta:
            self._parts.append(delta)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def close(self, finish_reason: Optional[str] = None) -> str:
        self.finish_reason = finish_reason
        self._move(TranslationState.COMPLETE)
        return self.text

    def finish(self, model: Optional[str] = None, finish_reason: Optional[str] = None) -> TranslationResult:
        return parse_translation(self.close(finish_reason), model)

    def fail(self, kind: ErrorKind) -> None:
        self.failure = kind
        self._move(TranslationState.FAILED)


def assemble_translation(chunks, model: Optional[str] = None) -> TranslationResult:
    """Offline helper: run already-received delta strings through the state machine."""
    stream = TranslationStream()
    stream.begin()
    for c in chunks:
        stream.feed(c)
    return stream.finish(model=model)


def _close(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if callable(close):
        try:
            close()
        except Exception as e:  # closing is best effort
            logger.debug("translation stream close failed: {}", e)


class TranslationClient:
    """
    One streaming chat completion per translation with an explicit deadline.
    The OpenAI client is created lazily; tests inject a fake with the same surface.
    """

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = _get_settings()
        self._client = client
        self.model = model or cfg["model"]
        self.max_tokens = max_tokens if max_tokens is not None else cfg["max_tokens"]
        self.timeout_s = timeout_s if timeout_s is not None else cfg["timeout_s"]
        self._clock = clock

    def _get_client(self):
        if self._client is not None:
            return self._client
        if not os.getenv("OPENAI_API_KEY"):
            raise TranslationServiceError("AI service is not configured (OPENAI_API_KEY missing)")
        self._client = OpenAI(base_url=os.getenv("OPENAI_BASE_URL") or None, max_retries=0)
        return self._client

    def _collect(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> Tuple[TranslationStream, Optional[str], Optional[str]]:
        """Stream one chat completion into a TranslationStream; transport failures become typed errors."""
        state = TranslationStream()
        client = self._get_client()
        state.begin()
        started = self._clock()
        model = self.model
        stream = None
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "timeout": self.timeout_s,  # SDK v1 supports per-call timeout
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            stream = client.chat.completions.create(**kwargs)
            finish_reason = None
            for chunk in stream:
                if self._clock() - started > self.timeout_s:
                    state.fail(ErrorKind.TRANSLATION_TIMEOUT)
                    raise TranslationTimeout(
                        f"AI service timed out after {self.timeout_s:g}s"
                    )
                model = getattr(chunk, "model", None) or model
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                state.feed(getattr(delta, "content", None) if delta is not None else None)
                finish_reason = getattr(choice, "finish_reason", None)
                if finish_reason:
                    break
            return state, model, finish_reason
        except TranslationTimeout:
            raise
        except openai.APITimeoutError as e:
            state.fail(ErrorKind.TRANSLATION_TIMEOUT)
            raise TranslationTimeout(f"AI service timed out: {e}") from e
        except (openai.APIConnectionError, openai.APIStatusError) as e:
            state.fail(ErrorKind.TRANSLATION_SERVICE)
            logger.warning("translation transport error: {}", e)
            raise TranslationServiceError(f"AI service error: {e}") from e
        except openai.OpenAIError as e:
            state.fail(ErrorKind.TRANSLATION_SERVICE)
            raise TranslationServiceError(f"AI service error: {e}") from e
        finally:
            if stream is not None:
                _close(stream)

    def translate(self, messages: List[Dict[str, str]]) -> TranslationResult:
        """
        Returns a TranslationResult (possibly a parse-error one).
        Raises TranslationTimeout / TranslationServiceError for transport failures.
        """
        state, model, finish_reason = self._collect(
            messages, max_tokens=self.max_tokens, temperature=0, json_mode=True
        )
        return state.finish(model=model, finish_reason=finish_reason)

    def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: int = 500,
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> str:
        """Plain text of one completion (explanations, answers). Same deadline and error mapping."""
        state, _, finish_reason = self._collect(
            messages, max_tokens=max_tokens, temperature=temperature, json_mode=json_mode
        )
        return state.close(finish_reason=finish_reason).strip()
