"""Interfaces of the external collaborators the controller drives.

The controller never touches the target directly: page automation happens
behind ``ActionExecutor`` and record storage behind ``PersistenceStore``.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from pacekeeper.models.actions import PendingAction
    from pacekeeper.proxy.types import ProxyRecord
    from pacekeeper.session.types import Cookie, PageSignal


class ActionExecutor(Protocol):
    """Performs actions against the target on the controller's behalf."""

    async def perform_action(self, action: PendingAction, proxy: ProxyRecord | None) -> Any:
        """Attempt *action*; raise on failure (DetectionSignalError for detection)."""
        ...

    async def inspect_page(self) -> PageSignal | bool | Iterable[str]:
        """Report detection indicators currently visible on the page."""
        ...

    async def get_cookies(self) -> list[Cookie | dict]: ...

    async def set_cookies(self, cookies: list[dict]) -> None: ...

    async def reauthenticate(self) -> bool:
        """Log in again; True when a new authenticated session exists."""
        ...

    async def use_identity(self, proxy: ProxyRecord) -> None:
        """Route subsequent traffic through *proxy*."""
        ...

    async def apply_captcha_solution(self, token: str) -> None: ...


class PersistenceStore(Protocol):
    """Opaque record collections addressed by key."""

    async def load(self, key: str) -> list[dict]: ...

    async def save(self, key: str, records: list[dict]) -> None: ...

    async def append(self, key: str, record: dict) -> None: ...
