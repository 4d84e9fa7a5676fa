"""Proxy sources — remote listing API, local flat file, static list.

Every source yields ``ProxyRecord`` objects and never raises on fetch
failure: errors are logged and an empty list is returned so the pool can
fall through to the next source.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import httpx

from pacekeeper.proxy.types import ProxyRecord

logger = logging.getLogger(__name__)


class ProxySource(Protocol):
    """Anything that can produce candidate proxy records."""

    name: str

    async def fetch(self) -> list[ProxyRecord]: ...


def parse_proxy_line(line: str) -> ProxyRecord | None:
    """Parse a ``host:port[:user:pass]`` entry. Returns None when malformed."""
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    parts = line.split(":")
    if len(parts) not in (2, 4):
        return None

    host, raw_port = parts[0], parts[1]
    try:
        port = int(raw_port)
    except ValueError:
        return None
    if not host or not 0 < port < 65536:
        return None

    username, password = (parts[2], parts[3]) if len(parts) == 4 else (None, None)
    return ProxyRecord(address=host, port=port, username=username, password=password)


class StaticProxySource:
    """Proxies given directly, e.g. from the ``proxy_endpoints`` setting."""

    name = "static"

    def __init__(self, entries: list[str]) -> None:
        self._entries = list(entries)

    async def fetch(self) -> list[ProxyRecord]:
        records = []
        for entry in self._entries:
            record = parse_proxy_line(entry)
            if record is None:
                if entry.strip():
                    logger.warning("Skipping malformed proxy entry")
                continue
            records.append(record)
        return records


class FileProxySource:
    """Local flat list with one ``host:port:user:pass`` entry per line."""

    name = "file"

    def __init__(self, path: str) -> None:
        self._path = Path(path)

    async def fetch(self) -> list[ProxyRecord]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error("Error reading proxy list file %s: %s", self._path, exc)
            return []

        records = []
        for lineno, line in enumerate(content.splitlines(), start=1):
            record = parse_proxy_line(line)
            if record is None:
                if line.strip() and not line.strip().startswith("#"):
                    logger.warning("Skipping malformed proxy entry at %s:%d", self._path, lineno)
                continue
            records.append(record)
        return records


class RemoteProxySource:
    """Token-authenticated proxy listing API.

    Parameters
    ----------
    api_url:
        Listing endpoint (e.g. "https://proxy.webshare.io/api/v2/proxy/list/").
    api_token:
        Token sent as ``Authorization: Token <api_token>``.
    page_size:
        Number of proxies requested.
    timeout_seconds:
        HTTP timeout for the listing request.
    """

    name = "remote"

    def __init__(
        self,
        api_url: str,
        api_token: str,
        page_size: int = 25,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._api_url = api_url
        self._api_token = api_token
        self._page_size = page_size
        self._timeout_seconds = timeout_seconds

    async def fetch(self) -> list[ProxyRecord]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    self._api_url,
                    params={"mode": "direct", "page": 1, "page_size": self._page_size},
                    headers={"Authorization": f"Token {self._api_token}"},
                    timeout=self._timeout_seconds,
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error fetching proxies from listing API: %s", exc)
            return []

        results = data.get("results", []) if isinstance(data, dict) else []
        records = []
        for item in results:
            try:
                records.append(
                    ProxyRecord(
                        address=item.get("proxy_address") or item["address"],
                        port=int(item["port"]),
                        username=item.get("username"),
                        password=item.get("password"),
                    )
                )
            except (AttributeError, KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed proxy record from listing API")
        return records
