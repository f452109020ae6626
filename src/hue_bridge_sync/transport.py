"""HTTPS transport to the bridge CLIP v2 API."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Mapping, Optional

import httpx

from .config import Config
from .errors import CommandRejected, ProtocolDecodeFailure, TransientTransportError
from .logging import get_logger

RESOURCE_PATH = "/clip/v2/resource"
EVENT_STREAM_PATH = "/eventstream/clip/v2"


@dataclass(frozen=True)
class BridgeResponse:
    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def resource_path(resource_type: str, resource_id: Optional[str] = None) -> str:
    if resource_id:
        return f"{RESOURCE_PATH}/{resource_type}/{resource_id}"
    return f"{RESOURCE_PATH}/{resource_type}"


class BridgeTransport:
    """Thin async wrapper over `httpx.AsyncClient` for bridge requests.

    Every request carries the `hue-application-key` header. Network level
    failures surface as `TransientTransportError`; non-2xx answers to
    resource reads surface as `CommandRejected`.
    """

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.logger = get_logger("hue.sync")
        headers = {"Accept": "application/json"}
        if config.application_key:
            headers["hue-application-key"] = config.application_key
        limits = httpx.Limits(
            max_connections=config.metadata_max_concurrent + 4,
            max_keepalive_connections=config.metadata_max_concurrent,
            keepalive_expiry=30.0,
        )
        self._client = httpx.AsyncClient(
            base_url=config.bridge_base_url,
            headers=headers,
            timeout=config.request_timeout,
            verify=config.verify_tls,
            limits=limits,
            transport=transport,
        )

    async def request(
        self, method: str, path: str, body: Optional[Mapping[str, Any]] = None
    ) -> BridgeResponse:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TransportError as exc:
            raise TransientTransportError(f"{method} {path} failed: {exc}") from exc
        parsed: Any = None
        if response.content:
            try:
                parsed = response.json()
            except ValueError:
                parsed = response.text
        return BridgeResponse(status=response.status_code, body=parsed)

    async def fetch_resources(
        self, resource_type: str, resource_id: Optional[str] = None
    ) -> List[Mapping[str, Any]]:
        """GET a resource collection (or one resource) and unwrap its `data` array."""

        path = resource_path(resource_type, resource_id)
        response = await self.request("GET", path)
        if not response.ok:
            raise CommandRejected.from_response(response.status, response.body)
        if not isinstance(response.body, Mapping) or not isinstance(response.body.get("data"), list):
            raise ProtocolDecodeFailure(f"Unexpected payload for {path}")
        return [item for item in response.body["data"] if isinstance(item, Mapping)]

    async def put_resource(
        self, resource_type: str, resource_id: str, body: Mapping[str, Any]
    ) -> BridgeResponse:
        """PUT a resource update; raises `CommandRejected` on a non-2xx answer."""

        path = resource_path(resource_type, resource_id)
        self.logger.debug("PUT %s", path, extra={"body": json.dumps(body)})
        response = await self.request("PUT", path, body)
        if not response.ok:
            raise CommandRejected.from_response(response.status, response.body)
        return response

    @asynccontextmanager
    async def event_stream(self) -> AsyncIterator[AsyncIterator[str]]:
        """Open the long-lived event stream and yield an iterator over its lines."""

        timeout = httpx.Timeout(self.config.request_timeout, read=None)
        try:
            async with self._client.stream(
                "GET",
                EVENT_STREAM_PATH,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    raise TransientTransportError(
                        f"Event stream refused with status {response.status_code}"
                    )
                yield self._lines(response)
        except httpx.TransportError as exc:
            raise TransientTransportError(f"Event stream failed: {exc}") from exc

    async def _lines(self, response: httpx.Response) -> AsyncIterator[str]:
        try:
            async for line in response.aiter_lines():
                yield line
        except httpx.TransportError as exc:
            raise TransientTransportError(f"Event stream interrupted: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
