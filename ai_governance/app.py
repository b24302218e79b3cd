"""FastAPI application for the AI governance core.

Exposes the model catalog, the runtime policy state, the policy audit log,
the AI operations tracker, and the policy-gated chat, vision, evidence
analysis and OCR endpoints.

Governance-first architecture:
1. Every AI call is evaluated by the policy engine BEFORE provider dispatch
2. Every decision is recorded in the bounded policy audit log
3. Every dispatched operation is tracked with content fingerprints only
"""

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from ai_governance.audit import PolicyAuditLog
from ai_governance.config import GatewayConfig, default_config, load_config
from ai_governance.evidence import (
    DEFAULT_EVIDENCE_MODEL,
    analyze_evidence_image,
    normalize_evidence_type,
)
from ai_governance.gateway import DispatchContext, Gateway, PolicyDeniedError
from ai_governance.models import (
    ChatRequest,
    ChatResponse,
    DispatchConfig,
    ErrorDetail,
    ErrorResponse,
    EvaluateRequest,
    EvidenceRequest,
    ModeRequest,
    OcrRequest,
    SelectModelRequest,
    StreamChunk,
    VisionRequest,
)
from ai_governance.policy import PolicyEngine, RuntimeMode, RuntimeState
from ai_governance.provider import AdapterError, ConfigurationError, ProviderAdapter, build_adapters
from ai_governance.registry import ModelRegistry, build_registry
from ai_governance.router import RoutingError
from ai_governance.telemetry import logger, setup_logging
from ai_governance.tracker import OperationTracker

CONFIG_PATH = os.getenv("AI_GOVERNANCE_CONFIG", "config/example.config.json")
MAX_OPS_PAGE = 200

_config: Optional[GatewayConfig] = None
_registry: Optional[ModelRegistry] = None
_state: Optional[RuntimeState] = None
_audit_log: Optional[PolicyAuditLog] = None
_tracker: Optional[OperationTracker] = None
_adapters: Optional[Dict[str, ProviderAdapter]] = None
_gateway: Optional[Gateway] = None


def get_config() -> GatewayConfig:
    """Return the loaded configuration (lazy-init, built-in defaults if no file)."""
    global _config
    if _config is None:
        if Path(CONFIG_PATH).is_file():
            _config = load_config(CONFIG_PATH)
        else:
            logger.warning("Config file %s not found, using built-in defaults", CONFIG_PATH)
            _config = default_config()
    return _config


def get_registry() -> ModelRegistry:
    """Return the model registry (lazy-init from config)."""
    global _registry
    if _registry is None:
        _registry = build_registry(get_config())
    return _registry


def get_state() -> RuntimeState:
    """Return the runtime mode / selected model holder."""
    global _state
    if _state is None:
        cfg = get_config()
        _state = RuntimeState(
            get_registry(),
            mode=RuntimeMode(cfg.default_mode),
            selected_model_id=cfg.default_model,
        )
    return _state


def get_audit_log() -> PolicyAuditLog:
    """Return the policy audit log (lazy-init from config)."""
    global _audit_log
    if _audit_log is None:
        _audit_log = PolicyAuditLog(get_registry(), capacity=get_config().audit_capacity)
    return _audit_log


def get_tracker() -> OperationTracker:
    """Return the AI operation tracker (lazy-init from config)."""
    global _tracker
    if _tracker is None:
        cfg = get_config()
        _tracker = OperationTracker(capacity=cfg.ops_capacity, rates=cfg.model_rates)
    return _tracker


def get_adapters() -> Dict[str, ProviderAdapter]:
    """Return the provider adapter table (lazy-init from config)."""
    global _adapters
    if _adapters is None:
        _adapters = build_adapters(get_config())
    return _adapters


def get_gateway() -> Gateway:
    """Return the policy-gated gateway."""
    global _gateway
    if _gateway is None:
        _gateway = Gateway(
            PolicyEngine(get_registry()),
            get_audit_log(),
            get_tracker(),
            get_adapters(),
            get_state(),
        )
    return _gateway


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Initialize config, logging, registry, and gateway on startup."""
    cfg = get_config()
    setup_logging(cfg.log_file)
    get_gateway()
    yield


app = FastAPI(title="AI Governance Core", version="0.1.0", lifespan=lifespan)


def _error_response(
    status: int,
    error_type: str,
    message: str,
    policy: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body = ErrorResponse(
        error=ErrorDetail(type=error_type, message=message),
        policy=policy,
    )
    return JSONResponse(status_code=status, content=body.model_dump())


def _dispatch_error_response(exc: Exception) -> JSONResponse:
    """Map gateway failures onto HTTP status codes."""
    if isinstance(exc, PolicyDeniedError):
        return _error_response(403, "policy_denied", exc.decision.reason, exc.decision.to_dict())
    if isinstance(exc, RoutingError):
        return _error_response(400, "routing_error", str(exc))
    if isinstance(exc, ConfigurationError):
        return _error_response(503, "configuration_error", str(exc))
    return _error_response(502, "provider_error", str(exc))


def _context(fields: Any) -> DispatchContext:
    return DispatchContext(
        case_sensitivity=fields.case_sensitivity,
        payload_classification=fields.payload_classification,
        redaction_status=fields.redaction_status,
        user_id=fields.user_id,
        matter_id=fields.matter_id,
    )


def _sse(chunk: StreamChunk) -> str:
    return "data: {}\n\n".format(json.dumps(chunk.model_dump(exclude_none=True)))


# --- Model catalog ---


@app.get("/api/ai/models")
async def list_models() -> Dict[str, Any]:
    """Full catalog with availability; local models are the ones usable offline."""
    registry = get_registry()
    models = []
    for entry in registry.list():
        data = entry.to_dict()
        data["is_local"] = not entry.requires_internet
        data["allowed_offline"] = not entry.requires_internet
        models.append(data)
    return {"models": models, "available_count": len(registry.available_models())}


@app.get("/api/ai/models/local")
async def list_local_models() -> Dict[str, Any]:
    return {"models": [e.to_dict() for e in get_registry().local_models()]}


@app.get("/api/ai/models/external")
async def list_external_models() -> Dict[str, Any]:
    return {"models": [e.to_dict() for e in get_registry().external_models()]}


# --- Policy state and audit ---


@app.get("/api/ai/policy/state")
async def policy_state() -> Dict[str, Any]:
    return get_state().snapshot()


@app.post("/api/ai/policy/mode")
async def set_policy_mode(request: ModeRequest) -> Dict[str, Any]:
    """Switch between online and restricted offline mode."""
    state = get_state()
    previous = state.set_mode(RuntimeMode(request.mode))
    body: Dict[str, Any] = state.snapshot()
    body["previous_mode"] = previous.value
    return body


@app.post("/api/ai/policy/select-model")
async def select_model(request: SelectModelRequest) -> Dict[str, Any]:
    """Select the default model and report how policy treats it right now."""
    state = get_state()
    state.set_selected_model(request.model_id)
    _, decision = get_gateway().authorize(request.model_id, "api_select_model")
    body: Dict[str, Any] = state.snapshot()
    body["decision"] = decision.to_dict()
    return body


@app.get("/api/ai/policy/audit")
async def policy_audit(limit: int = Query(default=50)) -> Dict[str, Any]:
    entries = get_audit_log().query(limit)
    return {"entries": [e.to_dict() for e in entries]}


@app.post("/api/ai/policy/evaluate", response_model=None)
async def evaluate_policy(request: EvaluateRequest) -> Any:
    """Dry-run a policy decision without dispatching anything."""
    try:
        context = _context(request)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))
    _, decision = get_gateway().authorize(request.model_id, "api_policy_evaluate", context)
    return {"decision": decision.to_dict()}


# --- AI operations ---


@app.get("/api/ai-ops/summary")
async def ops_summary() -> Dict[str, Any]:
    return get_tracker().summarize().to_dict()


@app.get("/api/ai-ops/records")
async def ops_records(
    limit: int = Query(default=50),
    offset: int = Query(default=0, ge=0),
) -> Dict[str, Any]:
    limit = min(limit, MAX_OPS_PAGE)
    records = get_tracker().query(limit, offset)
    return {"records": [r.to_dict() for r in records], "limit": limit, "offset": offset}


# --- Dispatch ---


@app.post("/api/ai/chat", response_model=None)
async def chat(request: ChatRequest) -> Any:
    """Policy-gated chat.

    With ``stream`` set, replies as server-sent events, one StreamChunk per
    ``data:`` frame, ending with a done frame. Otherwise returns a single
    ChatResponse.
    """
    gateway = get_gateway()
    config = DispatchConfig(
        model=request.model or get_state().get_selected_model(),
        max_tokens=request.max_tokens,
        temperature=request.temperature,
    )
    try:
        context = _context(request)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))

    if request.stream:

        async def event_stream() -> AsyncIterator[str]:
            async for chunk in gateway.dispatch_stream(
                request.messages, config, request.caller, context
            ):
                yield _sse(chunk)

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    try:
        text, decision = await gateway.dispatch_with_decision(
            request.messages, config, request.caller, context
        )
    except (PolicyDeniedError, RoutingError, ConfigurationError, AdapterError) as exc:
        return _dispatch_error_response(exc)

    response = ChatResponse(
        model=decision.effective_model_id,
        provider=decision.effective_provider,
        content=text,
        policy=decision.to_dict(),
    )
    return JSONResponse(status_code=200, content=response.model_dump())


@app.post("/api/ai/vision", response_model=None)
async def vision(request: VisionRequest) -> Any:
    """Policy-gated single-image analysis on a vision-capable model."""
    gateway = get_gateway()
    config = DispatchConfig(
        model=request.model or get_state().get_selected_model(),
        max_tokens=request.max_tokens,
    )
    try:
        context = _context(request)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))

    try:
        text, decision = await gateway.analyze_vision_with_decision(
            request.image_base64,
            request.media_type,
            request.prompt,
            config,
            request.caller,
            context,
        )
    except (PolicyDeniedError, RoutingError, ConfigurationError, AdapterError) as exc:
        return _dispatch_error_response(exc)

    response = ChatResponse(
        model=decision.effective_model_id,
        provider=decision.effective_provider,
        content=text,
        policy=decision.to_dict(),
    )
    return JSONResponse(status_code=200, content=response.model_dump())


@app.post("/api/ai/analyze-evidence", response_model=None)
async def analyze_evidence(request: EvidenceRequest) -> Any:
    """Analyze an evidence image; unknown evidence types are treated as photos."""
    try:
        context = _context(request)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))

    try:
        analysis = await analyze_evidence_image(
            get_gateway(),
            request.image_base64,
            request.media_type,
            normalize_evidence_type(request.evidence_type),
            caller=request.caller,
            context=context,
            model=request.model or DEFAULT_EVIDENCE_MODEL,
        )
    except (PolicyDeniedError, RoutingError, ConfigurationError, AdapterError) as exc:
        return _dispatch_error_response(exc)

    return JSONResponse(
        status_code=200, content=analysis.model_dump(by_alias=True, exclude_none=True)
    )


@app.post("/api/ai/ocr", response_model=None)
async def ocr(request: OcrRequest) -> Any:
    """Extract the text of a document image."""
    try:
        context = _context(request)
    except ValueError as exc:
        return _error_response(400, "validation_error", str(exc))

    try:
        analysis = await analyze_evidence_image(
            get_gateway(),
            request.image_base64,
            request.media_type,
            "document",
            caller=request.caller,
            context=context,
            model=request.model or DEFAULT_EVIDENCE_MODEL,
        )
    except (PolicyDeniedError, RoutingError, ConfigurationError, AdapterError) as exc:
        return _dispatch_error_response(exc)

    return {
        "text": analysis.ocr_text or "",
        "description": analysis.description,
        "metadata": analysis.metadata,
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Convert FastAPI's validation errors into our error envelope format."""
    return _error_response(
        422,
        "validation_error",
        "Request validation failed: {}".format(exc),
    )
