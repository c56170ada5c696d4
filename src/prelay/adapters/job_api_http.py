"""HTTP adapter for the remote prediction API.

Implements `JobApiPort` on top of `HttpClientPort`. Retrying is left to the
callers (the poller wraps `fetch_status` in the retry engine); this adapter
only translates payloads and statuses.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from prelay.core.exceptions import error_for_status
from prelay.core.interfaces.http_client import HttpClientPort
from prelay.core.models.prediction import JobSnapshot, PredictionStatus
from prelay.core.settings import logger


class HttpJobApiAdapter:
    def __init__(
        self,
        http_client: HttpClientPort,
        base_url: str,
        api_token: str,
        timeout: float | None = 60.0,
    ) -> None:
        if not api_token:
            raise ValueError("Job API token is required")
        self._http = http_client
        self._base_url = str(base_url).rstrip("/")
        self._headers = {
            "Authorization": f"Token {api_token}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = self._url(path)
        resp = await self._http.post(url, json=payload or {}, timeout=self._timeout, headers=self._headers)
        body = resp.get("body")
        error = error_for_status(
            resp.get("status", 0),
            url,
            reason=resp.get("reason"),
            headers=resp.get("headers"),
            body=body,
        )
        if error is not None:
            logger.warning(f"[job-api] POST failed url={url} status={resp.get('status')} error={error.message}")
            raise error
        return body

    async def create(
        self,
        version: str,
        input: Dict[str, Any],
        webhook: Optional[str] = None,
        webhook_events: Optional[List[str]] = None,
    ) -> JobSnapshot:
        payload: Dict[str, Any] = {"version": version, "input": input}
        if webhook:
            payload["webhook"] = webhook
            if webhook_events:
                payload["webhook_events_filter"] = list(webhook_events)
        body = await self._post("/predictions", payload)
        snapshot = JobSnapshot.model_validate(body)
        logger.info(f"[job-api] created prediction id={snapshot.id} status={snapshot.status}")
        return snapshot

    async def fetch_status(self, job_id: str) -> JobSnapshot:
        body = await self._http.get(
            self._url(f"/predictions/{job_id}"), timeout=self._timeout, headers=self._headers
        )
        return JobSnapshot.model_validate(body)

    async def cancel(self, job_id: str) -> JobSnapshot:
        body = await self._post(f"/predictions/{job_id}/cancel")
        return JobSnapshot.model_validate(body)

    async def list(
        self,
        status: Optional[PredictionStatus] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> List[JobSnapshot]:
        params: Dict[str, str] = {}
        if status:
            params["status"] = str(status)
        if limit:
            params["limit"] = str(limit)
        if cursor:
            params["cursor"] = cursor
        path = "/predictions" + (f"?{urlencode(params)}" if params else "")
        body = await self._http.get(self._url(path), timeout=self._timeout, headers=self._headers)
        items = body.get("results", []) if isinstance(body, dict) else body
        return [JobSnapshot.model_validate(item) for item in items or []]

    async def get_webhook_secret(self) -> str:
        body = await self._http.get(
            self._url("/webhooks/default/secret"), timeout=self._timeout, headers=self._headers
        )
        return body["key"]
