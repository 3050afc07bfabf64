import os
import secrets
import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from fleetward_core.config import Config, get_config
from fleetward_core.errors import (
    FleetwardError,
    InvalidStateError,
    NotFoundError,
    RecoverableError,
    ValidationError,
)
from fleetward_core.fleet.types import DeviceRecord, FirmwareRecord
from fleetward_core.logging import configure_logging, get_logger
from fleetward_core.rollouts import (
    ROLLOUT_STATUSES,
    CompositeEventSink,
    LoggingEventSink,
    RolloutController,
    RolloutDefaults,
    RolloutRecord,
    RolloutScheduler,
    WebhookEventSink,
    failure_rate,
    plan_rollout,
)
from fleetward_core.rollouts.serialization import format_timestamp
from fleetward_core.services.fastapi_scaffolding import (
    HealthResponse,
    add_correlation_id_middleware,
    api_key_required,
    apply_cors_middleware,
    build_health_response,
)
from fleetward_core.stores import StoreBundle, store_bundle_from_config
from fleetward_core.webhooks import DeliveryOptions, WebhookRegistration

SERVICE_NAME = "fleetward-rollouts"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV"),
    version=os.getenv("FLEETWARD_VERSION"),
)
logger = get_logger(__name__)


@dataclass
class ServiceState:
    stores: StoreBundle
    controller: RolloutController
    events: CompositeEventSink
    scheduler: RolloutScheduler | None = None


_STATE: ServiceState | None = None
_STATE_LOCK = threading.Lock()


def _get_config() -> Config:
    return get_config()


def _build_state(config: Config) -> ServiceState:
    stores = store_bundle_from_config(config)
    sinks = [LoggingEventSink()]
    if config.webhooks_enabled:
        sinks.append(
            WebhookEventSink(
                stores.webhooks.load_webhooks,
                options=DeliveryOptions(
                    timeout_s=config.webhook_timeout_s,
                    max_attempts=config.webhook_max_attempts,
                ),
            )
        )
    events = CompositeEventSink(*sinks)
    controller = RolloutController(
        store=stores.rollouts,
        registry=stores.fleet,
        firmware=stores.firmware,
        events=events,
        defaults=RolloutDefaults.from_config(config),
    )
    return ServiceState(stores=stores, controller=controller, events=events)


def _state() -> ServiceState:
    global _STATE
    with _STATE_LOCK:
        if _STATE is None:
            _STATE = _build_state(_get_config())
        return _STATE


@asynccontextmanager
async def lifespan(_: FastAPI):
    global _STATE
    config = _get_config()
    state = _state()
    if config.scheduler_enabled:
        state.scheduler = RolloutScheduler(
            state.controller,
            config.eval_interval_seconds,
        )
        state.scheduler.start()
    try:
        yield
    finally:
        if state.scheduler is not None:
            state.scheduler.stop()
        state.events.close()
        with _STATE_LOCK:
            _STATE = None


app = FastAPI(lifespan=lifespan)
apply_cors_middleware(app)
add_correlation_id_middleware(app)


class DeviceCreateRequest(BaseModel):
    name: str
    id: str | None = None
    mac_address: str | None = None
    status: str = "unknown"
    current_version: str | None = None
    last_seen_at: str | None = None
    metadata: dict[str, object] | None = None


class DeviceStatusRequest(BaseModel):
    status: str
    last_seen_at: str | None = None


class DeviceResponse(BaseModel):
    id: str
    name: str
    mac_address: str | None = None
    status: str
    current_version: str | None = None
    target_version: str | None = None
    last_outcome: str | None = None
    last_seen_at: str | None = None
    metadata: dict[str, object] | None = None
    created_at: str
    updated_at: str


class FirmwareCreateRequest(BaseModel):
    version: str
    checksum: str | None = None
    size_bytes: int | None = Field(default=None, ge=0)
    notes: str | None = None


class FirmwareResponse(BaseModel):
    version: str
    checksum: str | None = None
    size_bytes: int | None = None
    notes: str | None = None
    created_at: str


class RolloutCreateRequest(BaseModel):
    version: str
    stage_percentages: list[int] | None = None
    auto_expand: bool | None = None
    expand_after_minutes: int | None = None
    failure_threshold: int | None = None


class RolloutFailRequest(BaseModel):
    reason: str | None = None


class OutcomeRequest(BaseModel):
    device_id: str
    outcome: str


class RolloutResponse(BaseModel):
    id: str
    version: str
    status: str
    stage_percentages: list[int]
    current_stage: int
    current_percent: int
    total_devices: int
    updated_devices: int
    failed_devices: int
    failure_rate: float
    auto_expand: bool
    expand_after_minutes: int
    failure_threshold: int
    targeted_devices: int
    pending_devices: int
    pause_reason: str | None = None
    failure_reason: str | None = None
    last_expanded: str | None = None
    created_at: str
    updated_at: str


class PlanRequest(BaseModel):
    stage_percentages: list[int] | None = None
    status_filter: str | None = None


class PlanStageResponse(BaseModel):
    stage: int
    percent: int
    target_count: int
    device_ids: list[str]


class PlanResponse(BaseModel):
    total_devices: int
    stages: list[PlanStageResponse]


class WebhookCreateRequest(BaseModel):
    name: str
    url: str
    secret: str | None = None
    event_types: list[str] | None = None
    enabled: bool = True
    headers: dict[str, str] | None = None


class WebhookResponse(BaseModel):
    id: str
    name: str
    url: str
    event_types: list[str] | None = None
    enabled: bool
    created_at: str
    updated_at: str


def _fleet_api_key() -> str | None:
    return os.getenv("FLEET_API_KEY") or None


def _authorize(request: Request) -> None:
    raw_key = request.headers.get("x-api-key")
    expected = _fleet_api_key()
    if not raw_key:
        if api_key_required():
            raise HTTPException(status_code=401, detail="Unauthorized")
        return
    if expected is None or not secrets.compare_digest(raw_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _http_error(exc: FleetwardError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RecoverableError):
        logger.warning(
            "Rollout store unavailable",
            extra={"error_code": type(exc).__name__, "error_message": str(exc)},
        )
        return HTTPException(status_code=503, detail="Service unavailable")
    logger.error(
        "Unhandled rollout error",
        extra={"error_code": type(exc).__name__, "error_message": str(exc)},
    )
    return HTTPException(status_code=500, detail="Internal error")


def _request_extra(request: Request, **fields: object) -> dict[str, object]:
    extra: dict[str, object] = {
        "request_id": str(uuid.uuid4()),
        "correlation_id": getattr(request.state, "correlation_id", None),
    }
    extra.update(fields)
    return extra


def _device_response(device: DeviceRecord) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        name=device.name,
        mac_address=device.mac_address,
        status=device.status,
        current_version=device.current_version,
        target_version=device.target_version,
        last_outcome=device.last_outcome,
        last_seen_at=device.last_seen_at,
        metadata=device.metadata,
        created_at=device.created_at,
        updated_at=device.updated_at,
    )


def _firmware_response(record: FirmwareRecord) -> FirmwareResponse:
    return FirmwareResponse(
        version=record.version,
        checksum=record.checksum,
        size_bytes=record.size_bytes,
        notes=record.notes,
        created_at=record.created_at,
    )


def _rollout_response(rollout: RolloutRecord) -> RolloutResponse:
    return RolloutResponse(
        id=rollout.id,
        version=rollout.version,
        status=rollout.status,
        stage_percentages=list(rollout.stage_percentages),
        current_stage=rollout.current_stage,
        current_percent=rollout.current_percent,
        total_devices=rollout.total_devices,
        updated_devices=rollout.updated_devices,
        failed_devices=rollout.failed_devices,
        failure_rate=round(
            failure_rate(rollout.failed_devices, rollout.total_devices), 2
        ),
        auto_expand=rollout.auto_expand,
        expand_after_minutes=rollout.expand_after_minutes,
        failure_threshold=rollout.failure_threshold,
        targeted_devices=len(rollout.targeted_device_ids),
        pending_devices=len(rollout.pending_device_ids),
        pause_reason=rollout.pause_reason,
        failure_reason=rollout.failure_reason,
        last_expanded=format_timestamp(rollout.last_expanded),
        created_at=format_timestamp(rollout.created_at) or "",
        updated_at=format_timestamp(rollout.updated_at) or "",
    )


def _webhook_response(hook: WebhookRegistration) -> WebhookResponse:
    return WebhookResponse(
        id=hook.id,
        name=hook.name,
        url=hook.url,
        event_types=list(hook.event_types) if hook.event_types else None,
        enabled=hook.enabled,
        created_at=hook.created_at,
        updated_at=hook.updated_at,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    scheduler = _STATE.scheduler if _STATE is not None else None
    return build_health_response(
        SERVICE_NAME,
        scheduler=scheduler.snapshot() if scheduler is not None else None,
    )


@app.get("/fleet/devices", response_model=list[DeviceResponse])
async def list_devices(request: Request) -> list[DeviceResponse]:
    _authorize(request)
    devices = _state().stores.fleet.load_devices()
    return [_device_response(device) for device in devices]


@app.post("/fleet/devices", response_model=DeviceResponse, status_code=201)
async def create_device(
    request: Request,
    payload: DeviceCreateRequest,
) -> DeviceResponse:
    _authorize(request)
    try:
        device = _state().stores.fleet.register_device(
            name=payload.name,
            mac_address=payload.mac_address,
            status=payload.status,
            current_version=payload.current_version,
            last_seen_at=payload.last_seen_at,
            metadata=payload.metadata,
            device_id=payload.id,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    logger.info("Device registered", extra=_request_extra(request, device_id=device.id))
    return _device_response(device)


@app.put("/fleet/devices/{device_id}/status", response_model=DeviceResponse)
async def update_status(
    request: Request,
    device_id: str,
    payload: DeviceStatusRequest,
) -> DeviceResponse:
    _authorize(request)
    try:
        updated = _state().stores.fleet.update_device_status(
            device_id=device_id,
            status=payload.status,
            last_seen_at=payload.last_seen_at,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    if updated is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return _device_response(updated)


@app.get("/fleet/firmware", response_model=list[FirmwareResponse])
async def list_firmware(request: Request) -> list[FirmwareResponse]:
    _authorize(request)
    records = _state().stores.firmware.load_firmware()
    return [_firmware_response(record) for record in records]


@app.post("/fleet/firmware", response_model=FirmwareResponse, status_code=201)
async def create_firmware(
    request: Request,
    payload: FirmwareCreateRequest,
) -> FirmwareResponse:
    _authorize(request)
    try:
        record = _state().stores.firmware.register_firmware(
            version=payload.version,
            checksum=payload.checksum,
            size_bytes=payload.size_bytes,
            notes=payload.notes,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    logger.info(
        "Firmware registered",
        extra=_request_extra(request, firmware_version=record.version),
    )
    return _firmware_response(record)


@app.post("/fleet/rollouts/plan", response_model=PlanResponse)
async def plan_rollouts(request: Request, payload: PlanRequest) -> PlanResponse:
    _authorize(request)
    devices = _state().stores.fleet.load_devices()
    if payload.status_filter:
        desired = payload.status_filter.strip().lower()
        devices = [device for device in devices if device.status == desired]
    try:
        plan = plan_rollout(
            (device.id for device in devices),
            stage_percentages=payload.stage_percentages,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return PlanResponse(
        total_devices=plan.total_devices,
        stages=[
            PlanStageResponse(
                stage=stage.stage,
                percent=stage.percent,
                target_count=stage.target_count,
                device_ids=list(stage.device_ids),
            )
            for stage in plan.stages
        ],
    )


@app.get("/fleet/rollouts", response_model=list[RolloutResponse])
async def list_rollouts(
    request: Request,
    status: str | None = None,
) -> list[RolloutResponse]:
    _authorize(request)
    if status is not None and status not in ROLLOUT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown rollout status: {status}")
    rollouts = _state().controller.list_rollouts(status=status)
    return [_rollout_response(rollout) for rollout in rollouts]


@app.post("/fleet/rollouts", response_model=RolloutResponse, status_code=201)
async def create_rollout(
    request: Request,
    payload: RolloutCreateRequest,
) -> RolloutResponse:
    _authorize(request)
    state = _state()
    if not state.stores.firmware.firmware_exists(payload.version.strip()):
        raise HTTPException(status_code=404, detail="Firmware version not found")
    try:
        rollout = state.controller.create_rollout(
            payload.version,
            stage_percentages=payload.stage_percentages,
            auto_expand=payload.auto_expand,
            expand_after_minutes=payload.expand_after_minutes,
            failure_threshold=payload.failure_threshold,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    logger.info(
        "Rollout created",
        extra=_request_extra(
            request,
            rollout_id=rollout.id,
            firmware_version=rollout.version,
            total_devices=rollout.total_devices,
        ),
    )
    return _rollout_response(rollout)


@app.get("/fleet/rollouts/{rollout_id}", response_model=RolloutResponse)
async def get_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.get_rollout(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.post("/fleet/rollouts/{rollout_id}/advance", response_model=RolloutResponse)
async def advance_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.advance_rollout(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.post("/fleet/rollouts/{rollout_id}/pause", response_model=RolloutResponse)
async def pause_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.pause_rollout(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.post("/fleet/rollouts/{rollout_id}/resume", response_model=RolloutResponse)
async def resume_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.resume_rollout(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.post("/fleet/rollouts/{rollout_id}/fail", response_model=RolloutResponse)
async def fail_rollout(
    request: Request,
    rollout_id: str,
    payload: RolloutFailRequest | None = None,
) -> RolloutResponse:
    _authorize(request)
    reason = payload.reason if payload is not None else None
    try:
        rollout = _state().controller.fail_rollout(rollout_id, reason=reason)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.post("/fleet/rollouts/{rollout_id}/evaluate", response_model=RolloutResponse)
async def evaluate_rollout(request: Request, rollout_id: str) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.evaluate_auto_expand(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.delete("/fleet/rollouts/{rollout_id}", status_code=204)
async def cancel_rollout(request: Request, rollout_id: str) -> Response:
    _authorize(request)
    try:
        _state().controller.cancel_rollout(rollout_id)
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    logger.info("Rollout cancelled", extra=_request_extra(request, rollout_id=rollout_id))
    return Response(status_code=204)


@app.post("/fleet/rollouts/{rollout_id}/outcomes", response_model=RolloutResponse)
async def record_outcome(
    request: Request,
    rollout_id: str,
    payload: OutcomeRequest,
) -> RolloutResponse:
    _authorize(request)
    try:
        rollout = _state().controller.record_outcome(
            rollout_id,
            payload.device_id,
            payload.outcome,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    return _rollout_response(rollout)


@app.get("/fleet/webhooks", response_model=list[WebhookResponse])
async def list_webhooks(request: Request) -> list[WebhookResponse]:
    _authorize(request)
    hooks = _state().stores.webhooks.load_webhooks()
    return [_webhook_response(hook) for hook in hooks]


@app.post("/fleet/webhooks", response_model=WebhookResponse, status_code=201)
async def create_webhook(
    request: Request,
    payload: WebhookCreateRequest,
) -> WebhookResponse:
    _authorize(request)
    try:
        hook = _state().stores.webhooks.register_webhook(
            name=payload.name,
            url=payload.url,
            secret=payload.secret,
            event_types=payload.event_types,
            enabled=payload.enabled,
            headers=payload.headers,
        )
    except FleetwardError as exc:
        raise _http_error(exc) from exc
    logger.info("Webhook registered", extra=_request_extra(request, webhook_id=hook.id))
    return _webhook_response(hook)
