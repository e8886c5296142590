"""HTTP client for the remote blob store."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from ..errors import NotConfigured, TransportError, Unauthorized
from ..state.models import AppState, now_ms
from ..state.normalize import state_from_blob

logger = logging.getLogger(__name__)

SYNC_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")


@dataclass
class SyncEndpoint:
    """Where and as whom to sync."""

    base_url: str
    sync_id: str
    token: str

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.sync_id and self.token)

    @property
    def blob_path(self) -> str:
        return f"/v1/blob/{self.sync_id}"

    def validate(self) -> None:
        """Raise NotConfigured if the endpoint cannot be used."""
        if not self.is_configured:
            raise NotConfigured("Sync endpoint is not configured")
        if not SYNC_ID_PATTERN.match(self.sync_id):
            raise NotConfigured(f"Invalid sync id: {self.sync_id!r}")

    def to_dict(self) -> dict[str, str]:
        return {"base": self.base_url, "syncId": self.sync_id, "token": self.token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncEndpoint":
        return cls(
            base_url=str(data.get("base") or ""),
            sync_id=str(data.get("syncId") or ""),
            token=str(data.get("token") or ""),
        )


class BlobClient:
    """Client for GET/PUT of one sync id's blob.

    Non-success statuses are raised as Unauthorized or TransportError.
    The client never assumes a push was stored verbatim: the server
    merges and the merged result is what comes back.
    """

    def __init__(
        self,
        endpoint: SyncEndpoint,
        timeout: float = 30.0,
        clock: Callable[[], int] = now_ms,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the blob client.

        Args:
            endpoint: Remote base URL, sync id and bearer token.
            timeout: Request timeout in seconds.
            clock: Millisecond clock used when normalizing responses.
            transport: Optional httpx transport (e.g. for an in-process app).
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self._clock = clock
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.endpoint.base_url.rstrip("/"),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BlobClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.endpoint.token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, body: Any = None) -> Any:
        self.endpoint.validate()
        client = await self._get_client()

        try:
            if method == "GET":
                response = await client.get(
                    self.endpoint.blob_path, headers=self._headers()
                )
            else:
                response = await client.put(
                    self.endpoint.blob_path,
                    headers=self._headers(),
                    content=json.dumps(body),
                )
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {self.endpoint.blob_path} failed: {e}") from e

        if response.status_code == 401:
            raise Unauthorized("Remote rejected the sync token")
        if response.status_code != 200:
            raise TransportError(
                f"HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Remote returned invalid JSON: {e}") from e

    async def fetch_remote(self) -> AppState | None:
        """Fetch the remote blob.

        Returns:
            The remote AppState, or None if no blob exists yet.
        """
        data = await self._request("GET")
        if data is None:
            logger.debug(f"No remote blob for {self.endpoint.sync_id}")
            return None
        return state_from_blob(data, self._clock())

    async def push_and_merge(self, state: AppState) -> AppState:
        """Send local state and return the server's merged result.

        Raises:
            TransportError: If the response is not a blob.
        """
        data = await self._request("PUT", state.to_blob())
        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            raise TransportError("Remote returned a malformed blob")
        return state_from_blob(data, self._clock())
