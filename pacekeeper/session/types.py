"""Session, cookie and page-signal models."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Cookie:
    """A browser cookie as reported by the action executor."""

    name: str
    value: str
    domain: str
    path: str = "/"
    expires: float | None = None  # Epoch seconds; None or <= 0 means session cookie
    http_only: bool = False
    secure: bool = False

    def is_expired(self, now: float) -> bool:
        return self.expires is not None and self.expires > 0 and self.expires < now

    def matches_domain(self, target_domain: str) -> bool:
        """True when the cookie is scoped to *target_domain* or a subdomain of it."""
        domain = self.domain.lstrip(".").lower()
        target = target_domain.lstrip(".").lower()
        return domain == target or domain.endswith("." + target)

    @classmethod
    def from_dict(cls, data: dict) -> Cookie:
        """Build from a browser-automation cookie dict (name, value, domain, expires, ...)."""
        expires = data.get("expires")
        return cls(
            name=data["name"],
            value=data.get("value", ""),
            domain=data.get("domain", ""),
            path=data.get("path", "/"),
            expires=float(expires) if expires is not None else None,
            http_only=bool(data.get("httpOnly", data.get("http_only", False))),
            secure=bool(data.get("secure", False)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires if self.expires is not None else -1,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }


@dataclass(frozen=True)
class PageSignal:
    """Detection indicators observed on the current page.

    ``indicators`` holds the names of fired indicators (e.g. "security_check",
    "captcha_iframe"); ``content`` carries page markup for challenge extraction.
    """

    indicators: frozenset[str] = frozenset()
    content: str = ""
    url: str = ""

    @property
    def fired(self) -> bool:
        return bool(self.indicators)

    @classmethod
    def coerce(cls, value: PageSignal | bool | Iterable[str] | None) -> PageSignal:
        """Accept a PageSignal, a bare boolean, or an iterable of indicator names."""
        if isinstance(value, PageSignal):
            return value
        if value is None or value is False:
            return cls()
        if value is True:
            return cls(indicators=frozenset({"detected"}))
        return cls(indicators=frozenset(value))


@dataclass
class Session:
    """Authentication state of the single logical session a run drives."""

    essential_cookie_names: frozenset[str]
    cookies: dict[str, Cookie] = field(default_factory=dict)
    established_at: float | None = None
    detection_score: float = 0.0
    last_rotation_at: float | None = None
