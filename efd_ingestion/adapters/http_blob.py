"""BlobStore over HTTP Range requests (object storage with signed access)."""

from __future__ import annotations

from typing import Iterator

import requests

from efd_kernel.exceptions import BlobReadError, SourceUnavailableError

_RANGE_NOT_SATISFIABLE = 416
_PERMANENT_STATUSES = {401: "access denied", 403: "access denied", 404: "object not found", 410: "object gone"}


class HttpBlobStore:
    """
    Reads objects at ``{base_url}/{path}``.

    A resumed read relies on the server honouring ``Range``; a full ``200``
    answer to a ranged request from a non-zero offset is refused rather than
    re-reading the file from the start.
    """

    def __init__(self, base_url: str, access_token: str | None = None, timeout: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._access_token = access_token
        self._timeout = timeout

    def size(self, path: str) -> int:
        try:
            response = requests.head(self._url(path), headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as exc:
            raise BlobReadError(path, str(exc)) from exc
        self._raise_for_status(response, path)
        length = response.headers.get("Content-Length")
        if length is None or not length.isdigit():
            raise BlobReadError(path, "server did not report Content-Length")
        return int(length)

    def read_range(self, path: str, offset: int, length: int) -> bytes:
        if length <= 0:
            return b""
        headers = self._headers(range_header=f"bytes={offset}-{offset + length - 1}")
        try:
            response = requests.get(self._url(path), headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise BlobReadError(path, str(exc)) from exc
        if response.status_code == _RANGE_NOT_SATISFIABLE:
            return b""
        self._raise_for_status(response, path)
        if response.status_code == 200:
            # Range ignored: slice the full body.
            return response.content[offset : offset + length]
        return response.content

    def iter_blocks(self, path: str, offset: int, block_size: int) -> Iterator[bytes]:
        headers = self._headers(range_header=f"bytes={offset}-")
        try:
            with requests.get(
                self._url(path), headers=headers, stream=True, timeout=self._timeout
            ) as response:
                if response.status_code == _RANGE_NOT_SATISFIABLE:
                    return
                self._raise_for_status(response, path)
                if offset > 0 and response.status_code != 206:
                    raise BlobReadError(path, "server ignored the Range header")
                for block in response.iter_content(chunk_size=block_size):
                    if block:
                        yield block
        except requests.RequestException as exc:
            raise BlobReadError(path, str(exc)) from exc

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _headers(self, range_header: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        if range_header:
            headers["Range"] = range_header
        return headers

    @staticmethod
    def _raise_for_status(response: requests.Response, path: str) -> None:
        reason = _PERMANENT_STATUSES.get(response.status_code)
        if reason is not None:
            raise SourceUnavailableError(path, f"{reason} (HTTP {response.status_code})")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise BlobReadError(path, str(exc)) from exc
