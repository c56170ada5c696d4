# prelay/adapters/web/fastapi.py
import json
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from prelay.core.exceptions import (
    APIError,
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    RelayError,
    TransientNetworkError,
    ValidationError,
)
from prelay.core.interfaces.http_client import HttpClientPort
from prelay.core.logging_config import correlation_id_var
from prelay.core.managers.relay_services import RelayServices
from prelay.core.managers.webhook_queue import validate_webhook_config
from prelay.core.models.prediction import PredictionStatus
from prelay.core.models.problem import ProblemDetails
from prelay.core.models.requests import CreatePredictionRequest, SubscriptionRequest
from prelay.core.settings import logger


def _status_for(exc: RelayError) -> tuple[int, str]:
    if isinstance(exc, ValidationError):
        return 400, "Invalid Request"
    if isinstance(exc, NotFoundError):
        return 404, "Not Found"
    if isinstance(exc, RateLimitedError):
        return 429, "Rate Limited"
    if isinstance(exc, AuthenticationError):
        return 502, "Upstream Authentication Failed"
    if isinstance(exc, APIError) and 400 <= exc.status < 500:
        return exc.status, "Upstream Rejected Request"
    if isinstance(exc, (APIError, TransientNetworkError)):
        return 502, "Upstream Unavailable"
    return 500, "Internal Error"


# Note: this is a driver adapter. It only talks to the core through
# RelayServices; the core does not depend on this module.
def create_app(
    services_factory: Callable[[HttpClientPort], RelayServices],
    http_client: HttpClientPort,
):
    """Create the FastAPI app.

    Components are assembled by the composition root and passed in as a
    factory, so this module stays focused on HTTP concerns and lifecycle.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with http_client as client:
            services = services_factory(client)
            app.state.services = services
            try:
                yield
            finally:
                await services.shutdown()

    app = FastAPI(title="Prediction Relay", lifespan=lifespan)

    def render_problem(problem: ProblemDetails, *, include_request_id: bool = False) -> JSONResponse:
        payload = jsonable_encoder(problem.model_dump(exclude_none=True))
        response = JSONResponse(status_code=problem.status, content=payload)
        if include_request_id and problem.additional and problem.additional.requestId:
            response.headers["X-Request-ID"] = problem.additional.requestId
        return response

    def build_problem(status: int, title: str, detail: str, request: Request) -> ProblemDetails:
        return ProblemDetails(title=title, status=status, detail=detail, instance=str(request.url))

    def not_found(request: Request, detail: str) -> JSONResponse:
        return render_problem(build_problem(404, "Not Found", detail, request))

    # Correlation ID middleware: assigns per-request id (header override) and exposes it to logging
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        cid = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
        correlation_id_var.set(cid)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.set("-")
        response.headers["X-Request-ID"] = cid
        return response

    @app.exception_handler(RelayError)
    async def relay_exception_handler(request: Request, exc: RelayError):
        status, title = _status_for(exc)
        detail = "; ".join(exc.errors) if isinstance(exc, ValidationError) else exc.message
        problem = build_problem(status, title, detail, request)
        # Surface the request id only for server-side failures
        include_request_id = status >= 500
        if include_request_id:
            problem = problem.with_request_id(correlation_id_var.get())
            logger.error(f"[http:error] {request.method} {request.url.path} status={status} error={exc.message}")
        response = render_problem(problem, include_request_id=include_request_id)
        if isinstance(exc, RateLimitedError):
            response.headers["Retry-After"] = str(int(exc.retry_after))
        return response

    # ---------------- Predictions -----------------
    @app.post("/predictions", status_code=201)
    async def create_prediction(body: CreatePredictionRequest):
        snapshot = await app.state.services.predictions.create_prediction(
            body.version,
            body.input,
            webhook=body.webhook,
            webhook_events=body.webhook_events_filter,
        )
        return JSONResponse(status_code=201, content=snapshot.model_dump(mode="json"))

    @app.get("/predictions")
    async def list_predictions(
        status: Optional[PredictionStatus] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ):
        snapshots = await app.state.services.predictions.list_predictions(status, limit, cursor)
        return {"results": [s.model_dump(mode="json") for s in snapshots]}

    @app.get("/predictions/{prediction_id}")
    async def get_prediction(prediction_id: str):
        snapshot = await app.state.services.predictions.get_prediction(prediction_id)
        return snapshot.model_dump(mode="json")

    @app.post("/predictions/{prediction_id}/cancel")
    async def cancel_prediction(prediction_id: str):
        snapshot = await app.state.services.predictions.cancel_prediction(prediction_id)
        return snapshot.model_dump(mode="json")

    # ---------------- Push connections -----------------
    @app.post("/connections", status_code=201)
    async def open_connection():
        transport = app.state.services.transport
        connection_id = await transport.connect()
        info = transport.get_connection(connection_id)
        return JSONResponse(status_code=201, content=jsonable_encoder(info.model_dump(mode="json")))

    @app.get("/connections/{connection_id}")
    async def get_connection(connection_id: str, request: Request):
        info = app.state.services.transport.get_connection(connection_id)
        if info is None:
            return not_found(request, f"Connection '{connection_id}' not found")
        return info.model_dump(mode="json")

    @app.get("/connections/{connection_id}/events", response_model=None)
    async def connection_events(connection_id: str, request: Request):
        transport = app.state.services.transport
        if transport.get_connection(connection_id) is None:
            return not_found(request, f"Connection '{connection_id}' not found")

        async def generate():
            try:
                async for frame in transport.frames(connection_id):
                    yield {"event": frame.event, "data": json.dumps(frame.data)}
            finally:
                # The SSE consumer is gone; nobody else reads this outbox
                await transport.close_connection(connection_id)

        return EventSourceResponse(
            generate(),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.put("/connections/{connection_id}/subscriptions")
    async def subscribe(connection_id: str, body: SubscriptionRequest, request: Request):
        transport = app.state.services.transport
        if not transport.subscribe(connection_id, body.uri):
            return not_found(request, f"Connection '{connection_id}' not found")
        return {"subscriptions": sorted(transport.subscriptions(connection_id))}

    @app.delete("/connections/{connection_id}/subscriptions")
    async def unsubscribe(connection_id: str, uri: str, request: Request):
        transport = app.state.services.transport
        if not transport.unsubscribe(connection_id, uri):
            return not_found(request, f"Connection '{connection_id}' not found")
        return {"subscriptions": sorted(transport.subscriptions(connection_id))}

    # ---------------- Webhooks -----------------
    @app.post("/webhooks/validate")
    async def validate_webhook(body: dict):
        errors = validate_webhook_config(body)
        return {"valid": not errors, "errors": errors}

    @app.get("/webhooks/{delivery_id}/results")
    async def webhook_results(delivery_id: str, request: Request):
        queue = app.state.services.webhooks
        if not queue.has_delivery(delivery_id):
            return not_found(request, f"Webhook delivery '{delivery_id}' not found")
        return {
            "delivery_id": delivery_id,
            "pending": queue.is_pending(delivery_id),
            "results": [r.model_dump(mode="json") for r in queue.get_delivery_results(delivery_id)],
        }

    @app.get("/health")
    async def health():
        services = app.state.services
        return {
            "status": "ok",
            "tracked_jobs": len(services.poller.tracked_jobs()),
            "connections": len(services.transport.connections()),
            "pending_webhooks": len(services.webhooks.pending_ids()),
        }

    return app
