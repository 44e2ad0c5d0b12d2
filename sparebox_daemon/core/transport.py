"""
One heartbeat exchange with the control plane: POST {api_url}/api/hosts/heartbeat.
Status codes are not interpreted here; network errors propagate as httpx.HTTPError.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from sparebox_daemon import __version__

REQUEST_TIMEOUT = 30  # seconds
HEARTBEAT_PATH = "/api/hosts/heartbeat"


@dataclass
class TransportResponse:
    status_code: int
    headers: Mapping[str, str]
    body: str

    def json(self) -> Any:
        return json.loads(self.body)


class ReportTransport:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = f"{api_url.rstrip('/')}{HEARTBEAT_PATH}"
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport  # injected in tests (httpx.MockTransport)

    async def send(self, payload: dict) -> TransportResponse:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": f"sparebox-daemon/{__version__}",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, headers=headers, json=payload)
        return TransportResponse(
            status_code=resp.status_code,
            headers=resp.headers,
            body=resp.text,
        )
