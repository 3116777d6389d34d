from __future__ import annotations

import hashlib
import logging
import math
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from assistant_core import (
    ActionDispatcher,
    ActionLifecycleService,
    ActionRegistry,
    ActionRequest,
    ChatCompletionsProvider,
    EntityResolver,
    HookRunner,
    InAppNotifier,
    InMemoryRateCounter,
    PipelineError,
    ProviderCandidate,
    ProviderError,
    RateCounter,
    StreamingOrchestrator,
    minimum_necessary_hook,
    notification_hook,
)
from practice_actions import PracticeActionset, register_actions
from records import ComplianceService, PracticeStore, SQLitePracticeDB
from settings import Settings, bootstrap_local_env, configure_logging

bootstrap_local_env()
settings = Settings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: str = Field(pattern=r"^(system|user|assistant)$")
    content: str = Field(max_length=20000)


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1, max_length=100)
    timezone: str | None = None


class ActionExecuteRequest(BaseModel):
    action: str
    params: dict[str, Any] = Field(default_factory=dict)
    timezone: str | None = None


class PracticeAssistantApp:
    def __init__(self, config: Settings, *, provider_transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = config
        self.db = SQLitePracticeDB(config.db_path)
        self.store = PracticeStore(self.db)
        self.compliance = ComplianceService(self.store)
        self.resolver = EntityResolver(self.store)

        self.registry = ActionRegistry()
        self.actionset = PracticeActionset(self.store)
        register_actions(self.registry, self.actionset)

        self.notifier = InAppNotifier(self.store)
        self.hooks = HookRunner()
        self.hooks.add_before(minimum_necessary_hook(self.compliance))
        self.hooks.add_after(notification_hook(self.notifier))

        self.lifecycle = ActionLifecycleService(self.db)
        self.dispatcher = ActionDispatcher(
            registry=self.registry,
            store=self.store,
            resolver=self.resolver,
            compliance=self.compliance,
            hooks=self.hooks,
            lifecycle=self.lifecycle,
            default_timezone=config.default_timezone,
        )
        self.rate_counter: RateCounter = InMemoryRateCounter(
            max_requests=config.rate_limit_max,
            window_seconds=config.rate_limit_window_seconds,
        )
        self.use_provider_transport(provider_transport)

    def _provider_candidates(self) -> list[ProviderCandidate]:
        config = self.settings
        candidates = [
            ProviderCandidate(
                name="primary",
                base_url=config.provider_base_url,
                api_key=config.provider_api_key,
                model=config.chat_model,
            )
        ]
        if config.fallback_model and config.fallback_model != config.chat_model:
            candidates.append(
                ProviderCandidate(
                    name="fallback",
                    base_url=config.provider_base_url,
                    api_key=config.provider_api_key,
                    model=config.fallback_model,
                )
            )
        return candidates

    def use_provider_transport(self, transport: httpx.AsyncBaseTransport | None) -> None:
        self.provider = ChatCompletionsProvider(
            candidates=self._provider_candidates(),
            timeout_seconds=self.settings.chat_timeout_seconds,
            max_retries=self.settings.provider_max_retries,
            retry_base_delay=self.settings.provider_retry_base_delay,
            transport=transport,
        )
        self.orchestrator = StreamingOrchestrator(
            provider=self.provider,
            dispatcher=self.dispatcher,
            registry=self.registry,
            timeout_seconds=self.settings.chat_timeout_seconds,
            default_timezone=self.settings.default_timezone,
        )


container = PracticeAssistantApp(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await container.hooks.drain()


app = FastAPI(title="Practice Assistant Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_user_id(auth_header: str | None) -> str:
    if not auth_header:
        if settings.allow_anon:
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        if settings.allow_anon:
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer token is an opaque identity issued upstream.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


_STATUS_BY_KIND: dict[str, int] = {
    "ValidationError": 400,
    "UnknownAction": 400,
    "NotFound": 400,
    "Ambiguous": 400,
    "Unauthorized": 400,
    "PipelineError": 400,
    "PersistenceError": 500,
    "ComplianceLogError": 500,
    "Timeout": 500,
    "ProviderRateLimited": 429,
    "ProviderQuotaExceeded": 402,
    "ProviderError": 500,
}


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _pipeline_error_response(exc: PipelineError) -> JSONResponse:
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    log = logger.error if status_code >= 500 else logger.info
    log("pipeline error kind=%s status=%d: %s", exc.kind, status_code, exc.message)
    return _error_response(status_code, exc.user_message, error_kind=exc.kind)


@app.exception_handler(HTTPException)
async def _http_error(_: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def _request_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"field": ".".join(str(part) for part in error.get("loc", ())[1:]) or "body", "message": error.get("msg", "")}
        for error in exc.errors()
    ]
    return _error_response(400, "Invalid request body.", error_kind="ValidationError", errors=problems)


def _rate_limited(user_id: str) -> JSONResponse | None:
    decision = container.rate_counter.hit(user_id)
    if decision.allowed:
        return None
    retry_after = max(1, math.ceil(decision.retry_after_seconds))
    logger.info("rate limit reached for user=%s", user_id)
    response = _error_response(429, "Rate limit exceeded. Please try again later.", error_kind="RateLimited")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.get("/health")
def health():
    return {
        "status": "ok",
        "provider_configured": container.provider.configured,
        "actions": container.registry.list_names(),
    }


@app.post("/chat/stream")
async def chat_stream(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    limited = _rate_limited(user_id)
    if limited is not None:
        return limited

    messages = [message.model_dump() for message in payload.messages]
    try:
        body = await container.orchestrator.stream_reply(
            user_id=user_id,
            messages=messages,
            timezone=payload.timezone,
        )
    except PipelineError as exc:
        return _pipeline_error_response(exc)
    except httpx.HTTPError as exc:
        logger.error("chat stream transport failure: %s", exc)
        return _error_response(500, ProviderError.user_message, error_kind=ProviderError.kind)

    return StreamingResponse(
        body,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/chat/complete")
async def chat_complete(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    limited = _rate_limited(user_id)
    if limited is not None:
        return limited

    try:
        text, provider_name = await container.orchestrator.complete_with_action(
            messages=[message.model_dump() for message in payload.messages],
            timezone=payload.timezone,
        )
    except PipelineError as exc:
        return _pipeline_error_response(exc)
    return {"response": text, "provider": provider_name}


@app.post("/actions/execute")
async def actions_execute(
    payload: ActionExecuteRequest,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    limited = _rate_limited(user_id)
    if limited is not None:
        return limited

    outcome = await container.dispatcher.execute(
        ActionRequest(
            action_name=payload.action,
            parameters=payload.params,
            requesting_user_id=user_id,
            timezone=payload.timezone,
        )
    )
    if outcome.success:
        return {
            "success": True,
            "result": outcome.data,
            "message": outcome.message,
            "action_id": outcome.action_id,
            "lifecycle": outcome.lifecycle,
        }

    kind = outcome.error_kind or "PipelineError"
    return _error_response(
        _STATUS_BY_KIND.get(kind, 500),
        outcome.message or "The assistant could not complete that request.",
        error_kind=kind,
        errors=outcome.errors,
        details=outcome.data,
        action_id=outcome.action_id,
        lifecycle=outcome.lifecycle,
    )


@app.get("/logs/actions")
async def logs_actions(
    limit: int = 20,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    return {"items": await container.lifecycle.recent(user_id, max(1, min(limit, 200)))}


@app.get("/logs/audit")
async def logs_audit(
    limit: int = 20,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    bounded = max(1, min(limit, 200))
    return {
        "items": await container.compliance.recent_audit(user_id, bounded),
        "phi_access": await container.compliance.recent_phi_access(user_id, bounded),
    }


@app.get("/logs/notifications")
async def logs_notifications(
    limit: int = 20,
    authorization: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    return {"items": await container.store.get_notifications(user_id, max(1, min(limit, 200)))}
