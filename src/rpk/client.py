from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import httpx

from ._version import __version__

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_TIMEOUT_S = 30.0


class RpkError(RuntimeError):
    pass


class TransportError(RpkError):
    pass


@dataclass(frozen=True)
class RpkHTTPError(RpkError):
    status_code: int
    url: str
    body: str

    def __str__(self) -> str:
        body = self.body.strip()
        if len(body) > 200:
            body = body[:200] + "..."
        return f"HTTP {self.status_code} for {self.url}: {body}" if body else f"HTTP {self.status_code} for {self.url}"


class GitHubClient:
    """
    Minimal GitHub REST client. Only the release listing and asset downloads are needed.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": f"rpk/{__version__}"},
        )

    @classmethod
    def from_env(cls, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> "GitHubClient":
        token = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN") or None
        api_url = os.getenv("RPK_GITHUB_API_URL") or DEFAULT_API_URL
        return cls(api_url=api_url, token=token, timeout_s=timeout_s)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.api_url}{path}"

    def _headers(self, *, accept: str, auth: bool = True) -> dict[str, str]:
        headers = {"Accept": accept}
        if auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get_json(self, path: str, *, params: dict[str, Any] | None = None, auth: bool = True) -> Any:
        """
        GET ``path`` (relative to the API root, or an absolute URL) and decode JSON.

        Pass ``auth=False`` for URLs outside GitHub so the token is never sent there.
        """
        url = self._url(path)
        accept = "application/vnd.github+json" if auth else "application/json"
        try:
            resp = self._http.get(url, params=params, headers=self._headers(accept=accept, auth=auth))
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise RpkHTTPError(resp.status_code, url, resp.text)
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"Response from {url} is not valid JSON") from e

    def iter_pages(self, path: str, *, per_page: int = 100) -> Iterator[list[Any]]:
        page = 1
        while True:
            data = self.get_json(path, params={"page": page, "per_page": per_page})
            if not isinstance(data, list):
                # Callers validate the element shape; only the envelope is checked here.
                yield data
                return
            if not data:
                return
            yield data
            if len(data) < per_page:
                return
            page += 1

    def download(self, url: str, dest: Path) -> Path:
        """
        Stream ``url`` into ``dest``. The bytes land in a uniquely named sibling
        file first and are renamed into place once the body was fully read.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
        try:
            with self._http.stream("GET", url, headers=self._headers(accept="application/octet-stream")) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise RpkHTTPError(resp.status_code, url, resp.text)
                with tmp.open("wb") as out:
                    for chunk in resp.iter_bytes():
                        out.write(chunk)
            os.replace(tmp, dest)
        except httpx.HTTPError as e:
            raise TransportError(f"Download failed: {e}") from e
        finally:
            if tmp.exists():
                tmp.unlink()
        return dest
