"""Client for an Anti-Captcha compatible solving service.

Two JSON endpoints are used, both authenticated with ``clientKey`` in the
request body:

- POST {api_url}/createTask      -> {"errorId": 0, "taskId": 123}
- POST {api_url}/getTaskResult   -> {"errorId": 0, "status": "processing" | "ready",
                                     "solution": {"token": "..."}}

A non-zero ``errorId`` is surfaced as CaptchaServiceError.

SECURITY: Never logs the client key or proxy credentials sent with a task.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from pacekeeper.middleware.error_handler import CaptchaServiceError

logger = logging.getLogger(__name__)


class AntiCaptchaClient:
    """HTTP client for the solving service.

    Parameters
    ----------
    api_key:
        Account key sent as ``clientKey``.
    api_url:
        Service base URL (e.g. "https://api.anti-captcha.com").
    timeout_seconds:
        HTTP timeout for each request.
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.anti-captcha.com",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    async def _post(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._api_url}/{method}"
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    url,
                    json={"clientKey": self._api_key, **payload},
                    timeout=self._timeout_seconds,
                )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.error("Solving service %s request failed: %s", method, exc)
            raise CaptchaServiceError(f"{method} request failed: {exc}") from exc
        except ValueError as exc:
            raise CaptchaServiceError(f"{method} returned malformed JSON") from exc

        if not isinstance(data, dict):
            raise CaptchaServiceError(f"{method} returned an unexpected payload")

        if data.get("errorId"):
            description = data.get("errorDescription") or data.get("errorCode") or "Unknown error"
            logger.error("Solving service rejected %s: %s", method, description)
            raise CaptchaServiceError(
                description,
                error_id=data.get("errorId"),
                error_code=data.get("errorCode"),
            )
        return data

    async def create_task(self, task: dict[str, Any]) -> int:
        """Submit a task and return its service-assigned id."""
        data = await self._post("createTask", {"task": task})
        task_id = data.get("taskId")
        if task_id is None:
            raise CaptchaServiceError("createTask response carried no taskId")
        logger.info("Submitted %s task %s", task.get("type", "captcha"), task_id)
        return task_id

    async def get_task_result(self, task_id: int) -> dict[str, Any]:
        """Return ``{"status": ..., "solution": ...}`` for *task_id*."""
        data = await self._post("getTaskResult", {"taskId": task_id})
        return {
            "status": data.get("status", "processing"),
            "solution": data.get("solution") or {},
        }
