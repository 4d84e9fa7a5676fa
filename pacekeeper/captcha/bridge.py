"""Challenge resolution through an external solving service.

The bridge only recognizes a small table of challenge-embedding conventions
in page markup, hands the parameters plus the active network identity to
the solving service, polls for the token within a fixed budget, and gives
the token back to the action executor for injection. A failed task and an
exhausted polling budget are the same outcome: CaptchaUnsolvableError.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pacekeeper.middleware.error_handler import CaptchaServiceError, CaptchaUnsolvableError

if TYPE_CHECKING:
    from pacekeeper.integration.captcha_client import AntiCaptchaClient
    from pacekeeper.proxy.pool import ProxyPool
    from pacekeeper.services.protocols import ActionExecutor

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_SCRIPT_SRC = re.compile(
    r"https://([^/\s\"']+)\.arkoselabs\.com/fc/gt2/public_key/([^/\"'\s]+)"
)
_DATA_PKEY = re.compile(r"data-pkey\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)


class CaptchaStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ChallengeParameters:
    """What the solving service needs to reproduce the challenge."""

    public_key: str
    subdomain: str | None = None
    page_url: str = ""


@dataclass
class CaptchaTask:
    """One submission to the solving service. Never reused once finished."""

    task_id: int
    kind: str
    submitted_at: float
    deadline: float
    status: CaptchaStatus = CaptchaStatus.PENDING
    solution: str | None = None
    parameters: ChallengeParameters | None = field(default=None, repr=False)


class CaptchaBridge:
    """Resolves interactive challenges via the solving service.

    When constructed with a proxy pool, challenges are solved through the
    pool's current identity so the token is bound to the same address the
    action runs from; without one, the proxyless task type is used.
    """

    def __init__(
        self,
        client: AntiCaptchaClient,
        proxy_pool: ProxyPool | None = None,
        *,
        poll_interval_seconds: float = 10.0,
        max_poll_attempts: int = 30,
        user_agent: str = DEFAULT_USER_AGENT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._proxy_pool = proxy_pool
        self._poll_interval = poll_interval_seconds
        self._max_poll_attempts = max_poll_attempts
        self._user_agent = user_agent
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    def extract_challenge_parameters(
        page_content: str, page_url: str = ""
    ) -> ChallengeParameters | None:
        """Find the challenge public key (and API subdomain) in page markup.

        Checks embedded script URLs first, then a ``data-pkey`` attribute.
        Returns None when no known convention matches.
        """
        if not page_content:
            return None

        match = _SCRIPT_SRC.search(page_content)
        if match:
            params = ChallengeParameters(
                public_key=match.group(2), subdomain=match.group(1), page_url=page_url
            )
        else:
            match = _DATA_PKEY.search(page_content)
            if not match:
                return None
            params = ChallengeParameters(public_key=match.group(1), page_url=page_url)

        logger.info(
            "Found challenge parameters (subdomain: %s)", params.subdomain or "default"
        )
        return params

    def _build_task(self, params: ChallengeParameters) -> dict[str, Any]:
        task: dict[str, Any] = {
            "websiteURL": params.page_url,
            "websitePublicKey": params.public_key,
            "userAgent": self._user_agent,
        }
        if params.subdomain:
            task["funcaptchaApiJSSubdomain"] = params.subdomain

        if self._proxy_pool is None:
            task["type"] = "FunCaptchaTaskProxyless"
            return task

        proxy = self._proxy_pool.current_proxy
        if proxy is None:
            raise CaptchaUnsolvableError("No active proxy identity to solve the challenge through")

        task.update(
            type="FunCaptchaTask",
            proxyType=proxy.protocol,
            proxyAddress=proxy.address,
            proxyPort=proxy.port,
        )
        if proxy.username:
            task["proxyLogin"] = proxy.username
            task["proxyPassword"] = proxy.password or ""
        return task

    async def submit(self, params: ChallengeParameters) -> CaptchaTask:
        """Create a solving task for *params*."""
        payload = self._build_task(params)
        try:
            task_id = await self._client.create_task(payload)
        except CaptchaServiceError as exc:
            raise CaptchaUnsolvableError(f"Task submission failed: {exc.message}") from exc

        now = self._clock()
        return CaptchaTask(
            task_id=task_id,
            kind=payload["type"],
            submitted_at=now,
            deadline=now + self._poll_interval * self._max_poll_attempts,
            parameters=params,
        )

    async def poll(self, task: CaptchaTask) -> str:
        """Wait for the solution token.

        Raises CaptchaUnsolvableError when the service reports failure or
        the polling budget (attempts or deadline) runs out.
        """
        if task.status is not CaptchaStatus.PENDING:
            raise ValueError(f"Captcha task {task.task_id} already {task.status.value}")

        for attempt in range(1, self._max_poll_attempts + 1):
            await self._sleep(self._poll_interval)
            if self._clock() > task.deadline:
                break

            try:
                result = await self._client.get_task_result(task.task_id)
            except CaptchaServiceError as exc:
                task.status = CaptchaStatus.FAILED
                raise CaptchaUnsolvableError(f"Task {task.task_id} failed: {exc.message}") from exc

            status = result.get("status")
            if status == "ready":
                token = (result.get("solution") or {}).get("token")
                if not token:
                    break
                task.status = CaptchaStatus.READY
                task.solution = token
                logger.info("Captcha task %s solved", task.task_id)
                return token
            if status != "processing":
                logger.error("Captcha task %s returned status %r", task.task_id, status)
                break

            logger.debug(
                "Waiting for captcha solution, attempt %d/%d", attempt, self._max_poll_attempts
            )

        task.status = CaptchaStatus.FAILED
        raise CaptchaUnsolvableError(
            f"Captcha task {task.task_id} was not solved", task_id=task.task_id
        )

    async def apply(self, executor: ActionExecutor, token: str) -> None:
        """Hand the token to the executor, which injects it into the page."""
        await executor.apply_captcha_solution(token)
        logger.info("Applied captcha solution")

    async def solve(
        self, executor: ActionExecutor, page_content: str, page_url: str = ""
    ) -> str | None:
        """Extract, submit, poll and apply in one step.

        Returns None when the page shows no recognizable challenge.
        """
        params = self.extract_challenge_parameters(page_content, page_url)
        if params is None:
            return None

        task = await self.submit(params)
        token = await self.poll(task)
        await self.apply(executor, token)
        return token
