import json
import logging
from typing import Any, Dict, Optional

import httpx

from config import settings
from exceptions import SyncError

logger = logging.getLogger(__name__)


class RemoteClient:
    """Async HTTP client for the spreadsheet-backed sync endpoint."""

    def __init__(self, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=5,
            max_connections=10,
            keepalive_expiry=30.0
        )

        timeout = timeout if timeout is not None else settings.remote_timeout
        timeout_config = httpx.Timeout(
            timeout=timeout,
            connect=min(5.0, timeout),
        )

        # Apps Script web apps answer POSTs with a redirect to the result
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    async def post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST ``body`` as JSON and return the decoded JSON object.

        Raises SyncError on transport errors, non-2xx statuses and bodies
        that are not a JSON object.
        """
        try:
            response = await self._client.post(
                url,
                content=json.dumps(body, ensure_ascii=False).encode("utf-8"),
                headers={"Content-Type": "text/plain;charset=utf-8"},
            )
        except httpx.RequestError as exc:
            raise SyncError(f"Remote endpoint unreachable: {exc}") from exc

        if not response.is_success:
            raise SyncError(f"Remote endpoint returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise SyncError("Remote endpoint returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise SyncError("Remote endpoint returned an unexpected JSON value")
        return data

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
