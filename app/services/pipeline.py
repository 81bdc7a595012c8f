# =============================================
# File: app/services/pipeline.py
# Purpose: Request state machine: rate limit -> cache -> translate -> execute -> enrich -> audit -> frames
# =============================================
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generator, List, Optional

from loguru import logger

from app.utils import slog
from app.utils.metrics import record_cache, record_rate_limit_hit, record_request, record_translation
from app.utils.prompting import build_messages
from app.utils.qcache import QueryCache
from app.utils.ratelimit import RateLimitDecision, RateLimiter
from app.utils.timing import ms_since

from .audit import AuditRecorder
from .background import BackgroundWriter
from .catalog import StoreConfig, StoreRegistry
from .dialects import get_dialect
from .enrichment import EnrichmentPipeline
from .errors import (
    ErrorKind,
    QueryPipelineError,
    RateLimited,
    TranslationParseError,
    TranslationServiceError,
    UnknownInternalError,
    ValidationError,
    friendly_message,
    is_production,
)
from .executor import QueryExecutor
from .generation import TranslationClient
from .models import ConversationContext, Identity, SemanticPattern, TranslationResult
from .patterns import SemanticPatternStore

FAILURE_SUMMARY = "Could not complete your request"

MSG_CACHED = "Using cached query translation..."
MSG_TRANSLATING = "Converting natural language to SQL..."
MSG_ANALYZING = "Analyzing query and generating response..."
MSG_EXECUTING = "Executing query..."


class RequestState(str, Enum):
    RECEIVED = "RECEIVED"
    RATE_CHECKED = "RATE_CHECKED"
    CACHE_HIT = "CACHE_HIT"
    TRANSLATING = "TRANSLATING"
    TRANSLATED = "TRANSLATED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    ENRICHED = "ENRICHED"
    AUDITED = "AUDITED"
    STREAMED = "STREAMED"
    FAILED = "FAILED"


_NEXT = {
    RequestState.RECEIVED: {RequestState.RATE_CHECKED},
    RequestState.RATE_CHECKED: {RequestState.CACHE_HIT, RequestState.TRANSLATING},
    RequestState.CACHE_HIT: {RequestState.TRANSLATED},
    RequestState.TRANSLATING: {RequestState.TRANSLATED},
    RequestState.TRANSLATED: {RequestState.EXECUTING},
    RequestState.EXECUTING: {RequestState.EXECUTED},
    RequestState.EXECUTED: {RequestState.ENRICHED},
    RequestState.ENRICHED: {RequestState.AUDITED},
    RequestState.AUDITED: {RequestState.STREAMED},
    RequestState.STREAMED: set(),
    RequestState.FAILED: set(),
}
_TERMINAL = {RequestState.AUDITED, RequestState.STREAMED, RequestState.FAILED}


class RateLimitExceeded(RateLimited):
    def __init__(self, decision: RateLimitDecision):
        super().__init__("Too many requests")
        self.decision = decision


@dataclass
class RequestContext:
    request_id: str
    identity: Identity
    question: str
    store_id: str
    context: Optional[ConversationContext] = None
    store: Optional[StoreConfig] = None
    state: RequestState = RequestState.RECEIVED
    audit_id: Optional[int] = None
    decision: Optional[RateLimitDecision] = None
    error_kind: Optional[ErrorKind] = None
    cached: bool = False
    model: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)
    trail: List[str] = field(default_factory=lambda: [RequestState.RECEIVED.value])

    def advance(self, to: RequestState) -> None:
        if to not in _NEXT[self.state]:
            raise RuntimeError(f"illegal request transition {self.state.value} -> {to.value}")
        slog.log_event(
            "pipeline.transition",
            request_id=self.request_id,
            frm=self.state.value,
            to=to.value,
            elapsed_ms=ms_since(self.started),
        )
        self.state = to
        self.trail.append(to.value)

    def fail(self, kind: ErrorKind) -> None:
        if self.state == RequestState.FAILED:
            return
        slog.log_event(
            "pipeline.transition",
            request_id=self.request_id,
            frm=self.state.value,
            to=RequestState.FAILED.value,
            error_kind=kind.value,
            elapsed_ms=ms_since(self.started),
        )
        self.state = RequestState.FAILED
        self.error_kind = kind
        self.trail.append(RequestState.FAILED.value)


def _status(message: str) -> Dict[str, Any]:
    return {"status": "processing", "message": message}


class QueryPipeline:
    """
    Owns the process-wide cache and limiter (each with its own lock) plus every
    collaborator. admit() runs before any external call; stream() yields status
    frames and exactly one terminal frame.
    """

    def __init__(
        self,
        *,
        registry: StoreRegistry,
        limiter: RateLimiter,
        cache: QueryCache,
        translator: TranslationClient,
        executor: QueryExecutor,
        enrichment: EnrichmentPipeline,
        audit: AuditRecorder,
        patterns: Optional[SemanticPatternStore],
        background: BackgroundWriter,
    ):
        self.registry = registry
        self.limiter = limiter
        self.cache = cache
        self.translator = translator
        self.executor = executor
        self.enrichment = enrichment
        self.audit = audit
        self.patterns = patterns
        self.background = background

    # ---------------- admission ---------------- #

    def admit(
        self,
        identity: Identity,
        question: str,
        store_id: str,
        context: Optional[ConversationContext] = None,
        request_id: Optional[str] = None,
    ) -> RequestContext:
        """Validate the store and rate-limit the caller. Rejections create no audit record."""
        ctx = RequestContext(
            request_id=request_id or slog.new_request_id(),
            identity=identity,
            question=question,
            store_id=(store_id or "").strip().lower(),
            context=context,
        )
        ctx.store = self.registry.get(ctx.store_id)
        if ctx.store is None:
            ctx.fail(ErrorKind.VALIDATION)
            raise ValidationError(f"Unknown database '{store_id}'")

        ctx.decision = self.limiter.check(identity.actor_id)
        if ctx.decision.blocked:
            record_rate_limit_hit()
            ctx.fail(ErrorKind.RATE_LIMITED)
            raise RateLimitExceeded(ctx.decision)
        ctx.advance(RequestState.RATE_CHECKED)

        ctx.audit_id = self.audit.start(
            identity.actor_id,
            ctx.store_id,
            question,
            details={"query": question, "database": ctx.store_id, "request_id": ctx.request_id},
        )
        return ctx

    # ---------------- streaming ---------------- #

    def stream(self, ctx: RequestContext) -> Generator[Dict[str, Any], None, None]:
        try:
            frame = yield from self._run(ctx)
        except GeneratorExit:
            self._abandon(ctx)
            raise
        yield frame
        if ctx.state == RequestState.AUDITED:
            ctx.advance(RequestState.STREAMED)

    def _similar(self, ctx: RequestContext) -> list:
        if self.patterns is None:
            return []
        return self.patterns.search_similar(ctx.question, ctx.store_id)

    def _translate(self, ctx: RequestContext):
        store = ctx.store
        cached_query = self.cache.get(ctx.question, store.id)
        record_cache(cached_query is not None)
        if cached_query is not None:
            ctx.advance(RequestState.CACHE_HIT)
            ctx.cached = True
            ctx.model = "cache"
            yield _status(MSG_CACHED)
            return TranslationResult(query=cached_query, success=True, model="cache")

        ctx.advance(RequestState.TRANSLATING)
        yield _status(MSG_TRANSLATING)
        messages = build_messages(
            ctx.question,
            store.id,
            get_dialect(store.dialect),
            store.describe_schema(),
            context=ctx.context,
            similar=self._similar(ctx),
        )
        yield _status(MSG_ANALYZING)
        translation = self.translator.translate(messages)
        record_translation()
        ctx.model = translation.model
        if translation.error_kind == ErrorKind.TRANSLATION_PARSE.value:
            raise TranslationParseError(translation.error or "AI service returned an unreadable response")
        if not translation.success:
            raise TranslationServiceError(translation.error or "AI service could not translate the question")
        self.cache.put(ctx.question, store.id, translation.query)
        return translation

    def _run(self, ctx: RequestContext):
        translation: Optional[TranslationResult] = None
        try:
            translation = yield from self._translate(ctx)
            ctx.advance(RequestState.TRANSLATED)

            ctx.advance(RequestState.EXECUTING)
            yield _status(MSG_EXECUTING)
            execution = self.executor.execute(ctx.store_id, translation.query, ctx.question)
            ctx.advance(RequestState.EXECUTED)

            enriched = self.enrichment.run(
                ctx.question, translation, execution, ctx.identity, cached=ctx.cached
            )
            ctx.advance(RequestState.ENRICHED)
            # serialize before the audit record is closed as SUCCESS
            payload = enriched.model_dump(mode="json")

            self.audit.complete(
                ctx.audit_id,
                generated_query=enriched.query,
                results_summary=enriched.audit_summary,
                execution_time_ms=enriched.execution_time_ms,
                row_count=enriched.row_count,
                pii_types=enriched.pii_types,
            )
            ctx.advance(RequestState.AUDITED)
        except QueryPipelineError as e:
            return self._failure(ctx, e, translation)
        except Exception as e:
            logger.exception("unexpected pipeline failure (request {})", ctx.request_id)
            return self._failure(ctx, UnknownInternalError(str(e)), translation)

        self._remember(ctx, translation, enriched)
        latency = ms_since(ctx.started)
        record_request(latency_ms=latency, model=ctx.model)
        slog.log_event(
            "pipeline.completed",
            request_id=ctx.request_id,
            actor_id=ctx.identity.actor_id,
            database=ctx.store_id,
            qhash=slog.qhash(ctx.question),
            cache_hit=ctx.cached,
            model=ctx.model,
            row_count=enriched.row_count,
            pii_types=enriched.pii_types,
            latency_ms=latency,
        )
        return {"status": "completed", "result": payload}

    def _remember(self, ctx: RequestContext, translation: TranslationResult, enriched) -> None:
        if self.patterns is None:
            return
        pattern = SemanticPattern(
            query_text=ctx.question,
            generated_query=enriched.query,
            store_id=ctx.store_id,
            dialect=ctx.store.dialect,
            success=True,
            execution_time_ms=enriched.execution_time_ms,
            row_count=enriched.row_count,
            confidence=enriched.confidence,
            actor_id=ctx.identity.actor_id,
        )
        self.background.submit("pattern.upsert", self.patterns.upsert, pattern)

    def _alternatives(self, ctx: RequestContext) -> List[str]:
        if self.patterns is None:
            return []
        return self.patterns.alternatives(ctx.question, ctx.store_id)

    def _failure(
        self,
        ctx: RequestContext,
        err: QueryPipelineError,
        translation: Optional[TranslationResult],
    ) -> Dict[str, Any]:
        ctx.fail(err.kind)
        query = translation.query if translation is not None else None
        self.background.submit(
            "audit.fail",
            self.audit.fail,
            ctx.audit_id,
            error_message=err.message,
            error_kind=err.kind.value,
            generated_query=query,
            strict=True,
        )
        latency = ms_since(ctx.started)
        record_request(latency_ms=latency, model=ctx.model, error_kind=err.kind.value)
        slog.log_event(
            "pipeline.failed",
            request_id=ctx.request_id,
            actor_id=ctx.identity.actor_id,
            database=ctx.store_id,
            qhash=slog.qhash(ctx.question),
            error_kind=err.kind.value,
            latency_ms=latency,
        )
        result: Dict[str, Any] = {
            "status": "error",
            "error": friendly_message(err.message),
            "error_kind": err.kind.value,
            "summary": FAILURE_SUMMARY,
            "query": query,
            "alternatives": self._alternatives(ctx),
        }
        if not is_production():
            result["technical_error"] = err.message
        return {"status": "error", "result": result}

    def _abandon(self, ctx: RequestContext) -> None:
        """Client went away mid-stream: close the audit record in the background."""
        if ctx.state in _TERMINAL:
            return
        ctx.fail(ErrorKind.UNKNOWN)
        logger.info("client disconnected during request {}", ctx.request_id)
        self.background.submit(
            "audit.fail",
            self.audit.fail,
            ctx.audit_id,
            error_message="client disconnected before completion",
            error_kind=ErrorKind.UNKNOWN.value,
            strict=True,
        )


def build_pipeline(**overrides: Any) -> QueryPipeline:
    """Wire every collaborator from the environment; any of them can be overridden."""
    def pick(name: str, factory):
        # explicit None check: an empty QueryCache is falsy
        value = overrides.pop(name, None)
        return factory() if value is None else value

    registry = pick("registry", StoreRegistry.from_env)
    parts: Dict[str, Any] = {
        "registry": registry,
        "limiter": pick("limiter", RateLimiter),
        "cache": pick("cache", QueryCache),
        "translator": pick("translator", TranslationClient),
        "executor": pick("executor", lambda: QueryExecutor(registry)),
        "enrichment": pick("enrichment", EnrichmentPipeline),
        "audit": pick("audit", AuditRecorder),
        "background": pick("background", BackgroundWriter),
    }
    # patterns=None disables retrieval-augmented prompting
    parts["patterns"] = overrides.pop("patterns") if "patterns" in overrides else SemanticPatternStore()
    if overrides:
        raise TypeError(f"unknown pipeline components: {sorted(overrides)}")
    return QueryPipeline(**parts)
