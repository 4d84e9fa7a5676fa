"""Proxy data models for the proxy pool."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote


@dataclass
class ProxyRecord:
    """A single network identity with reliability tracking.

    ``reliability_score`` stays within [0, 1]; ``blacklisted`` is set the
    first time the score reaches the pool's threshold and never cleared.
    """

    address: str
    port: int
    username: str | None = None
    password: str | None = None
    protocol: str = "http"
    reliability_score: float = 1.0
    last_validated_at: float | None = None
    last_validation_ok: bool | None = None
    blacklisted: bool = False
    success_count: int = 0
    failure_count: int = 0

    @property
    def key(self) -> str:
        """Identity used for de-duplication and blacklisting."""
        return f"{self.address}:{self.port}"

    @property
    def url(self) -> str:
        """Proxy URL including credentials, for HTTP clients."""
        if self.username:
            auth = quote(self.username, safe="")
            if self.password:
                auth += ":" + quote(self.password, safe="")
            return f"{self.protocol}://{auth}@{self.address}:{self.port}"
        return f"{self.protocol}://{self.address}:{self.port}"

    @property
    def redacted_url(self) -> str:
        """Proxy URL safe for logs."""
        if self.username:
            return f"{self.protocol}://***@{self.address}:{self.port}"
        return self.url
