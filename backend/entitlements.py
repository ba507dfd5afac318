"""Client for the external authorization service that decides playback access."""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx

from backend.errors import EntitlementUnavailable
from pipeline.retry_utils import MaxRetriesExceeded, RetryConfig, with_retry


LOGGER = logging.getLogger("vap.entitlements")

SYSTEM_CALLER = "system:uptime-monitor"


class EntitlementClient:
    """Asks ``VAP_ENTITLEMENT_URL`` whether a user may watch a video.

    The service answers ``{"allowed": true|false}``; a 403 also counts as a
    denial. With no URL configured every caller is permitted.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        resolved = base_url if base_url is not None else os.getenv("VAP_ENTITLEMENT_URL", "")
        self.base_url = resolved.strip()
        self._client = client
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=2, initial_delay=0.2, max_delay=1.0)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _ask(self, user_id: str, video: dict) -> bool:
        response = self._http().post(
            self.base_url,
            json={"userId": user_id, "videoId": video["id"], "lessonId": video.get("lesson_id")},
        )
        if response.status_code == 403:
            return False
        response.raise_for_status()
        return bool(response.json().get("allowed"))

    def is_allowed(self, user_id: Optional[str], video: dict) -> bool:
        if user_id == SYSTEM_CALLER:
            return True
        if not self.base_url:
            return True
        if not user_id:
            return False
        try:
            return with_retry(lambda: self._ask(user_id, video), self.retry_config, "entitlement.check")
        except (MaxRetriesExceeded, httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("entitlement.unavailable", extra={"video_id": video["id"], "error": str(exc)})
            raise EntitlementUnavailable(f"Entitlement service unavailable: {exc}") from exc
