"""HTTP client for the SafeWork Pro REST API used by the offline sync."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from core.errors import NetworkUnavailable, RemoteRejected
from core.settings import SYNC
from models.operations import ATTACHMENT_QUEUE, ENTITY_QUEUE, SESSION_QUEUE
from models.queue_item import QueueItem


logger = logging.getLogger("safework.sync.api")


@dataclass(frozen=True)
class Route:
    method: str
    path: str
    send_body: bool = True

    def resolve(self, key: str) -> str:
        return self.path.format(key=key)


ROUTES: Dict[Tuple[str, str], Route] = {
    (SESSION_QUEUE, "create"): Route("POST", "/api/lmra-sessions"),
    (SESSION_QUEUE, "update"): Route("PATCH", "/api/lmra-sessions/{key}"),
    (SESSION_QUEUE, "complete"): Route("PATCH", "/api/lmra-sessions/{key}"),
    (ENTITY_QUEUE, "create"): Route("POST", "/api/projects"),
    (ENTITY_QUEUE, "update"): Route("PATCH", "/api/projects/{key}"),
    (ENTITY_QUEUE, "delete"): Route("DELETE", "/api/projects/{key}", send_body=False),
    (ENTITY_QUEUE, "member_add"): Route("POST", "/api/projects/{key}/members"),
    (ENTITY_QUEUE, "member_update"): Route("PATCH", "/api/projects/{key}/members"),
    (ENTITY_QUEUE, "member_remove"): Route("DELETE", "/api/projects/{key}/members"),
    (ATTACHMENT_QUEUE, "upload"): Route("POST", "/api/lmra-sessions/photos"),
}


def route_for(queue_name: str, operation: str) -> Route:
    try:
        return ROUTES[(queue_name, operation)]
    except KeyError:
        raise ValueError(f"No route for {queue_name}/{operation}") from None


def _photo_form(item: QueueItem) -> Tuple[Dict[str, str], Dict[str, tuple]]:
    payload = item.payload
    data = {
        "sessionId": str(payload.get("sessionId") or ""),
        "category": str(payload.get("category") or ""),
    }
    if payload.get("caption"):
        data["caption"] = str(payload["caption"])
    filename = payload.get("filename") or f"{item.key}.jpg"
    content_type = payload.get("contentType") or "application/octet-stream"
    files = {"file": (filename, item.content or b"", content_type)}
    return data, files


class RemoteApi:
    """Maps queue operations onto REST calls.

    A 2xx answer is success; anything else raises :class:`RemoteRejected`.
    Transport failures (DNS, refused connection, timeout) raise
    :class:`NetworkUnavailable`.
    """

    def __init__(
        self,
        base_url: str = SYNC.api_base_url,
        *,
        timeout: float = SYNC.request_timeout_sec,
        health_path: str = SYNC.health_path,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.health_path = health_path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
        )

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def send(self, queue_name: str, item: QueueItem) -> httpx.Response:
        route = route_for(queue_name, item.operation)
        url = route.resolve(item.key)
        kwargs: dict = {}
        if queue_name == ATTACHMENT_QUEUE:
            kwargs["data"], kwargs["files"] = _photo_form(item)
        elif route.send_body:
            kwargs["json"] = item.payload

        logger.debug("%s %s (%s/%s)", route.method, url, queue_name, item.key)
        try:
            response = await self._client.request(route.method, url, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"{route.method} {url} failed: {exc}") from exc

        if not response.is_success:
            raise RemoteRejected(response.status_code, response.reason_phrase)
        return response

    async def check_health(self) -> bool:
        try:
            response = await self._client.get(self.health_path)
        except httpx.TransportError as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return response.is_success


__all__ = ["ROUTES", "RemoteApi", "Route", "route_for"]
