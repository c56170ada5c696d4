"""JSON-RPC 2.0 envelopes used on the push channel and notification factories."""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from prelay.core.models.prediction import JobSnapshot, PredictionStatus, resource_uri

METHOD_STATUS = "prediction/status"
METHOD_PROGRESS = "prediction/progress"
METHOD_ERROR = "prediction/error"
METHOD_SESSION_CLOSED = "session/closed"


class Resource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uri: str
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    text: Optional[str] = None


class _Envelope(BaseModel):
    jsonrpc: Literal["2.0"] = "2.0"

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class JsonRpcNotification(_Envelope):
    """One-way message. Carries no id."""

    method: str
    params: Dict[str, Any] = Field(default_factory=dict)

    def resource_uri(self) -> Optional[str]:
        resource = self.params.get("resource")
        if isinstance(resource, Resource):
            return resource.uri
        if isinstance(resource, dict):
            return resource.get("uri")
        return None


class JsonRpcRequest(_Envelope):
    id: Union[str, int]
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class JsonRpcErrorObject(BaseModel):
    code: int
    message: str
    data: Any = None


class JsonRpcResponse(_Envelope):
    id: Union[str, int]
    result: Any = None
    error: Optional[JsonRpcErrorObject] = None


JsonRpcMessage = Union[JsonRpcRequest, JsonRpcResponse, JsonRpcNotification]


def parse_message(payload: Dict[str, Any]) -> JsonRpcMessage:
    """Pick the envelope type from the keys present in a decoded payload."""
    if not isinstance(payload, dict):
        raise ValueError(f"payload must be a JSON object, got {type(payload).__name__}")
    if "method" in payload and "id" not in payload:
        return JsonRpcNotification.model_validate(payload)
    if "method" in payload:
        return JsonRpcRequest.model_validate(payload)
    if "result" in payload or "error" in payload:
        return JsonRpcResponse.model_validate(payload)
    raise ValueError("payload is neither a request, a response nor a notification")


def _prediction_resource(snapshot: JobSnapshot) -> Dict[str, Any]:
    return Resource(
        uri=resource_uri(snapshot.id),
        mime_type="application/json",
        text=snapshot.model_dump_json(),
    ).model_dump(by_alias=True, exclude_none=True)


def create_status_notification(
    snapshot: JobSnapshot, previous_status: PredictionStatus
) -> JsonRpcNotification:
    return JsonRpcNotification(
        method=METHOD_STATUS,
        params={
            "resource": _prediction_resource(snapshot),
            "status": str(snapshot.status),
            "previous_status": str(previous_status),
            "prediction": snapshot.model_dump(mode="json"),
        },
    )


def create_progress_notification(snapshot: JobSnapshot, progress: int) -> JsonRpcNotification:
    return JsonRpcNotification(
        method=METHOD_PROGRESS,
        params={
            "resource": _prediction_resource(snapshot),
            "progress": progress,
            "prediction": snapshot.model_dump(mode="json"),
        },
    )


def create_error_notification(snapshot: JobSnapshot, error: str) -> JsonRpcNotification:
    return JsonRpcNotification(
        method=METHOD_ERROR,
        params={
            "resource": _prediction_resource(snapshot),
            "error": error,
            "prediction": snapshot.model_dump(mode="json"),
        },
    )


def create_session_closed_notification(reason: str) -> JsonRpcNotification:
    return JsonRpcNotification(method=METHOD_SESSION_CLOSED, params={"reason": reason})
