"""GitHubContentStore: RemoteStore backed by files in a GitHub repository.

Uses raw httpx against the REST contents API. Each entity is one file; the
blob ``sha`` GitHub returns is the version token, and sending it back with
an update makes the write conditional.

Endpoints (GitHub REST API):
- Read file: GET /repos/{owner}/{repo}/contents/{path}?ref={branch}
  -> JSON with base64 ``content`` and ``sha``
- Create/update file: PUT /repos/{owner}/{repo}/contents/{path}
  -> JSON body ``{"message", "content", "sha"?, "branch"?}``;
  409 when ``sha`` is stale, 422 when ``sha`` is missing for an existing file
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Callable

import httpx

from writeback.remote_store import (
    StoreAuthError,
    StoreConflictError,
    StoreConnectionError,
    StoredDocument,
    StoreError,
    StoreRateLimitError,
    StoreServerError,
    StoreTimeoutError,
    VersionToken,
)

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.github.com"
_API_VERSION = "2022-11-28"


def default_path(key: str) -> str:
    return f"data/{key}.json"


class GitHubContentStore:
    """Whole-file reads and sha-conditional writes via the GitHub contents API.

    Constructor accepts explicit params, no env-var loading.
    ``path_for`` maps an entity key to a repository path.
    """

    def __init__(
        self,
        token: str,
        repository: str,
        *,
        branch: str | None = None,
        path_for: Callable[[str], str] = default_path,
        base_url: str = _BASE_URL,
    ) -> None:
        self._repository = repository.strip("/")
        self._branch = branch
        self._path_for = path_for
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": _API_VERSION,
            },
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )

    def _contents_url(self, key: str) -> str:
        return f"/repos/{self._repository}/contents/{self._path_for(key)}"

    # -- internal request dispatcher -----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, str] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request, mapping transport failures to retryable store errors."""
        try:
            return await self._client.request(method, endpoint, params=params, json=json_data)
        except httpx.TimeoutException as exc:
            raise StoreTimeoutError(str(exc) or "request timed out") from exc
        except httpx.TransportError as exc:
            raise StoreConnectionError(str(exc) or "connection failed") from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """Map an error response to the store exception hierarchy."""
        status = response.status_code
        if status < 400:
            return
        body = response.text
        if status == 429 or (
            status == 403 and response.headers.get("x-ratelimit-remaining") == "0"
        ):
            raise StoreRateLimitError(body, status_code=status)
        if status in (401, 403):
            raise StoreAuthError(body, status_code=status)
        if status == 409:
            raise StoreConflictError(body, status_code=status)
        if status == 422 and "sha" in body:
            raise StoreConflictError(body, status_code=status)
        if status >= 500:
            raise StoreServerError(body, status_code=status)
        raise StoreError(body, status_code=status)

    # -- RemoteStore protocol -------------------------------------------------

    async def read(self, key: str) -> StoredDocument | None:
        """Fetch the file for ``key``. Returns None if it does not exist."""
        params = {"ref": self._branch} if self._branch else None
        response = await self._request("GET", self._contents_url(key), params=params)
        if response.status_code == 404:
            return None
        self._raise_for_status(response)

        data = response.json()
        if not isinstance(data, dict) or data.get("type") != "file":
            raise StoreError(f"{self._path_for(key)} is not a file")
        if data.get("encoding") != "base64":
            raise StoreError(
                f"Unsupported content encoding for {self._path_for(key)}: {data.get('encoding')}"
            )
        try:
            content = base64.b64decode(data.get("content", ""))
        except (binascii.Error, ValueError) as exc:
            raise StoreError(f"Invalid base64 content for {self._path_for(key)}") from exc
        return StoredDocument(content=content, version=data["sha"])

    async def write_if_match(
        self,
        key: str,
        document: bytes,
        expected_version: VersionToken | None,
        message: str,
    ) -> VersionToken:
        """Create or update the file for ``key``; returns the new blob sha."""
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(document).decode("ascii"),
        }
        if expected_version is not None:
            payload["sha"] = expected_version
        if self._branch:
            payload["branch"] = self._branch

        logger.debug("Writing %s (%s).", self._path_for(key), message)
        response = await self._request("PUT", self._contents_url(key), json_data=payload)
        self._raise_for_status(response)
        data = response.json()
        try:
            return data["content"]["sha"]
        except (KeyError, TypeError) as exc:
            raise StoreError(f"Unexpected response writing {self._path_for(key)}") from exc

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> GitHubContentStore:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
