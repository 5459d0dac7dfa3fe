"""HTTP adapter for post upload API operations."""
from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..errors import DigestError, UploadError, UploadTransientError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 429}

TokenRefresher = Callable[[], Awaitable[str]]


def _error_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except Exception:
        return response.text
    if isinstance(body, dict) and "error" in body:
        return body["error"]
    return body


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"result": body}


class HTTPUploadClient:
    """
    HTTP client adapter for chunk uploads and post creation.

    Implements IUploadAPIClient protocol. Requests use a bearer token when one
    is set and basic client credentials otherwise. A 401 triggers one token
    refresh (when a refresher is given) and a replay of the request.
    """

    supports_resumable_offsets = True

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: int = 60,
        token_refresher: Optional[TokenRefresher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._token = token
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._token_refresher = token_refresher
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _authorization(self) -> Optional[str]:
        if self._token:
            return f"Bearer {self._token}"
        if self._client_id and self._client_secret:
            raw = f"{self._client_id}:{self._client_secret}".encode()
            return f"Basic {base64.b64encode(raw).decode()}"
        return None

    async def _send(self, method: str, endpoint: str, retrying: bool = False, **kwargs) -> httpx.Response:
        if not self._client:
            raise RuntimeError("HTTPUploadClient not initialized. Use 'async with' context.")

        headers = dict(kwargs.pop("headers", None) or {})
        authorization = self._authorization()
        if authorization:
            headers["Authorization"] = authorization

        response = await self._client.request(method, endpoint, headers=headers, **kwargs)

        if response.status_code == 401 and self._token_refresher and not retrying:
            logger.info(f"Token rejected on {method} {endpoint}, refreshing")
            self._token = await self._token_refresher()
            return await self._send(method, endpoint, retrying=True, headers=headers, **kwargs)

        return response

    async def upload_chunk(self, post_id: str, key: str, data: bytes, offset: int, total: int) -> Dict[str, Any]:
        """
        Upload one byte range.

        Raises:
            UploadTransientError: network error, timeout, 5xx, 408 or 429
            UploadError: any other 4xx
        """
        end = offset + len(data) - 1
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Range": f"bytes {offset}-{end}/{total}",
            "X-Upload-Key": key,
        }
        endpoint = f"/post/{post_id}/upload"

        try:
            response = await self._send("PUT", endpoint, content=data, headers=headers)
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            raise UploadTransientError(f"Network error on PUT {endpoint}: {exc}", post_id) from exc

        status = response.status_code
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise UploadTransientError(
                f"API error {status} on PUT {endpoint}: {_error_detail(response)}", post_id, status
            )
        if status >= 400:
            raise UploadError(f"API error {status} on PUT {endpoint}: {_error_detail(response)}", post_id, status)
        return _json_or_empty(response)

    async def create_post_digest(self, post_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Create the post from its uploaded asset; retries 5xx before giving up."""
        endpoint = f"/post/{post_id}/complete"
        max_retries = 3
        last_exception: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                response = await self._send("POST", endpoint, json=metadata)

                if response.status_code >= 500 and attempt < max_retries - 1:
                    await asyncio.sleep(0.5 * (attempt + 1))
                    continue

                if response.status_code >= 400:
                    raise DigestError(
                        f"API error {response.status_code} on POST {endpoint}: {_error_detail(response)}",
                        post_id,
                    )

                return _json_or_empty(response)
            except (httpx.RequestError, httpx.TimeoutException) as exc:
                last_exception = exc
                if attempt < max_retries - 1:
                    await asyncio.sleep(0.5 * (attempt + 1))
                    continue
                raise DigestError(f"Network error on POST {endpoint}: {exc}", post_id) from exc

        raise DigestError(f"Failed to POST {endpoint} after {max_retries} attempts: {last_exception}", post_id)
