"""HTTP webhook notification dispatcher."""

from __future__ import annotations

import logging

import aiohttp

from parkshare._constants import USER_AGENT
from parkshare._redact import redact_for_log
from parkshare.exceptions import ParkShareTransportError
from parkshare.models.notification import Notification

_logger = logging.getLogger(__name__)


class WebhookNotificationDispatcher:
    """POSTs each notification as JSON to a fixed endpoint.

    The HTTP session is owned by the caller.
    """

    def __init__(
        self,
        url: str,
        http_session: aiohttp.ClientSession,
        *,
        token: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._http = http_session
        self._token = token
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._token:
            headers["authorization"] = f"Bearer {self._token}"
        return headers

    async def dispatch(self, notification: Notification) -> None:
        payload = notification.to_payload()
        headers = self._headers()
        _logger.debug(
            "POST %s headers=%s payload=%s",
            self._url,
            redact_for_log(headers),
            redact_for_log(payload),
        )

        try:
            async with self._http.post(self._url, json=payload, headers=headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if not 200 <= resp.status < 300:
                    raise ParkShareTransportError(
                        f"HTTP {resp.status} from {self._url}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=self._url,
                    )
        except ParkShareTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ParkShareTransportError(
                f"Request to {self._url} failed: {exc}",
                endpoint=self._url,
            ) from exc

        _logger.debug("Delivered %s notification to %s", notification.kind, notification.user_id)
