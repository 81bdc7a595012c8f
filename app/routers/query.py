# app/routers/query.py
from __future__ import annotations

import json
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from app.services.errors import ErrorKind, QueryPipelineError, ValidationError
from app.services.insights import QueryInsights
from app.services.models import ConversationContext, Identity
from app.services.pipeline import QueryPipeline, RateLimitExceeded
from app.utils import slog
from app.utils.identity import require_identity

router = APIRouter(tags=["query"])

MAX_CONTEXT_CHARS = 2000


# --------- Schemas ---------

class QueryContext(BaseModel):
    previous_query: str = Field("", max_length=MAX_CONTEXT_CHARS)
    previous_sql: str = Field("", max_length=MAX_CONTEXT_CHARS)

    @model_validator(mode="after")
    def _combined_length(self) -> "QueryContext":
        if len(self.previous_query) + len(self.previous_sql) > MAX_CONTEXT_CHARS:
            raise ValueError(f"context must not exceed {MAX_CONTEXT_CHARS} characters in total")
        return self


class QueryRequest(BaseModel):
    """
    Incoming query payload.
    - query: the user's question in natural language.
    - database_id: target store id, e.g. "sales" | "hr" | "inventory".
    - context: optional previous turn for follow-up questions.
    """
    query: str = Field(..., min_length=1, max_length=1000)
    database_id: str = Field(..., min_length=1, max_length=100)
    context: Optional[QueryContext] = None

    @field_validator("query")
    @classmethod
    def _trim_query(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("query must not be empty")
        return v

    @field_validator("database_id")
    @classmethod
    def _trim_db(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("database_id must not be empty")
        return v


class ExplainRequest(BaseModel):
    sql: str = Field(..., min_length=1, max_length=10000)
    database_id: str = Field(..., min_length=1, max_length=100)
    question: str = Field("", max_length=1000)

    @field_validator("sql", "database_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("must not be empty")
        return v


class AnswerRequest(BaseModel):
    """
    - question: the question the rows answer.
    - rows: result rows as returned in the completed frame (may be empty).
    - sql: optional query that produced them.
    """
    question: str = Field(..., min_length=1, max_length=1000)
    rows: List[Any]
    sql: Optional[str] = Field(None, max_length=10000)

    @field_validator("question")
    @classmethod
    def _trim_question(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("question must not be empty")
        return v


# -------- Streaming SSE ----------------

def _sse(data: str, event: str | None = None) -> str:
    # Basic SSE frame
    if event:
        return f"event: {event}\ndata: {data}\n\n"
    return f"data: {data}\n\n"


def _rate_limit_headers(exc: RateLimitExceeded) -> dict:
    d = exc.decision
    return {
        "Retry-After": str(d.retry_after()),
        "X-RateLimit-Limit": str(d.limit),
        "X-RateLimit-Remaining": str(d.remaining),
        "X-RateLimit-Reset": str(int(d.reset_time)),
    }


def get_pipeline(request: Request) -> QueryPipeline:
    return request.app.state.pipeline


# --------- Route ---------

@router.post("/query")
def post_query(
    req: QueryRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    pipeline: QueryPipeline = Depends(get_pipeline),
):
    """
    NL -> query pipeline streamed as Server-Sent Events:
      data: {"status": "processing", "message": ...}   (0..n)
      data: {"status": "completed"|"error", "result": {...}}   (exactly one)
      data: [DONE]
    Unknown database -> 400, rate limited -> 429 (no stream, no audit record).
    """
    request.state.log_context = {
        "actor_id": identity.actor_id,
        "qhash": slog.qhash(req.query),
        "database": req.database_id,
    }
    context = None
    if req.context is not None:
        context = ConversationContext(
            previous_query=req.context.previous_query,
            previous_sql=req.context.previous_sql,
        )

    try:
        ctx = pipeline.admit(
            identity,
            req.query,
            req.database_id,
            context=context,
            request_id=getattr(request.state, "request_id", None),
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except RateLimitExceeded as e:
        request.state.log_context["rate_limited"] = True
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Too Many Requests",
                "error_kind": e.kind.value,
                "retry_after": e.decision.retry_after(),
            },
            headers=_rate_limit_headers(e),
        )
    request.state.log_context["request_id"] = ctx.request_id

    def event_generator():
        for frame in pipeline.stream(ctx):
            yield _sse(json.dumps(frame, ensure_ascii=False, default=str))
        yield _sse("[DONE]")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def get_insights(request: Request) -> QueryInsights:
    p: QueryPipeline = request.app.state.pipeline
    return QueryInsights(p.translator, p.audit, p.registry)


def _ai_failure(e: QueryPipelineError, detail: str) -> JSONResponse:
    status = 504 if e.kind == ErrorKind.TRANSLATION_TIMEOUT else 502
    return JSONResponse(status_code=status, content={"detail": detail, "error_kind": e.kind.value})


@router.post("/query/explain")
def post_explain(
    req: ExplainRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    insights: QueryInsights = Depends(get_insights),
):
    """Plain-language explanation of a generated query; each request leaves a QUERY_EXPLAIN audit entry."""
    request.state.log_context = {"actor_id": identity.actor_id, "database": req.database_id}
    try:
        explanation = insights.explain(identity, req.database_id, req.sql, req.question)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except QueryPipelineError as e:
        logger.warning("query explanation failed ({}): {}", e.kind.value, e.message)
        return _ai_failure(e, "Failed to explain query")
    return {"success": True, **explanation.model_dump()}


@router.post("/query/answer")
def post_answer(
    req: AnswerRequest,
    request: Request,
    identity: Identity = Depends(require_identity),
    insights: QueryInsights = Depends(get_insights),
):
    """Natural-language answer over rows the caller already received."""
    request.state.log_context = {"actor_id": identity.actor_id, "qhash": slog.qhash(req.question)}
    try:
        answer = insights.answer(identity, req.question, req.rows, req.sql)
    except QueryPipelineError as e:
        logger.warning("answer generation failed ({}): {}", e.kind.value, e.message)
        return _ai_failure(e, "Failed to generate answer")
    return {"answer": answer}
