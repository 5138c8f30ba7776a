"""Remote sync client for the spreadsheet webhook.

The webhook is a Google Apps Script deployment. Reads are plain GETs that
return a JSON array of rows. Writes are POSTs whose response cannot be
trusted: the browser client sent them in ``no-cors`` mode and never saw the
reply, and the script answers with a redirect or an HTML page as often as
with JSON. A write therefore only ever reports that it was *dispatched*.

Copyright (c) Bryn Gwalad 2025
"""

from dataclasses import dataclass
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from sync.errors import NotConfigured, RemoteUnavailable, TransportError

logger = logging.getLogger("equiptrack_sync")

ADD_ITEM = "add_item"
UPDATE_ITEM = "update_item"
DELETE_ITEM = "delete_item"
ADD_LOG = "add_log"

INVENTORY_TYPE = "inventory"
LOGS_TYPE = "logs"


@dataclass(frozen=True)
class Dispatched:
    """A write left this process. It says nothing about whether the sheet
    accepted it."""

    action: str
    status_code: Optional[int] = None


class RemoteSyncClient:
    """Stateless transport around an ``httpx.AsyncClient``.

    ``endpoint`` is a callable so the engine can resolve the user override
    and the environment default on every call.
    """

    def __init__(
        self,
        endpoint: Callable[[], Optional[str]],
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._endpoint = endpoint
        # Apps Script answers POSTs with a 302 to the result page.
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": "EquipTrack-Sync"},
        )

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint()

    def _require_endpoint(self) -> str:
        url = self._endpoint()
        if not url:
            raise NotConfigured("webhook URL not configured; set SHEET_WEBHOOK_URL or an override in settings")
        return url

    async def _fetch(self, kind: str) -> List[Any]:
        url = self._require_endpoint()
        try:
            resp = await self._client.get(url, params={"type": kind})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RemoteUnavailable(f"fetch {kind} failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteUnavailable(f"fetch {kind} returned invalid JSON") from exc
        if not isinstance(data, list):
            raise RemoteUnavailable(f"fetch {kind} returned {type(data).__name__}, expected a list")
        return data

    async def fetch_items(self) -> List[Any]:
        """Return the raw inventory rows. Callers must filter them."""
        return await self._fetch(INVENTORY_TYPE)

    async def fetch_logs(self) -> List[Any]:
        """Return the raw log rows. Callers must filter them."""
        return await self._fetch(LOGS_TYPE)

    async def send_mutation(self, action: str, payload: Dict[str, Any]) -> Dispatched:
        """POST ``{"action": action, **payload}`` to the webhook.

        Raises NotConfigured when no endpoint is set and TransportError when
        the request could not be sent. Any HTTP response, error statuses
        included, counts as dispatched, and so does a request that was sent
        but timed out or was cut off while waiting for the reply.
        """
        url = self._require_endpoint()
        body = {"action": action}
        body.update(payload)
        try:
            resp = await self._client.post(url, json=body)
        except (httpx.ReadTimeout, httpx.RemoteProtocolError) as exc:
            logger.warning("No reply to %s after sending (%s); write remains unconfirmed", action, exc)
            return Dispatched(action=action, status_code=None)
        except (httpx.TransportError, httpx.InvalidURL) as exc:
            raise TransportError(f"{action} could not be dispatched: {exc}") from exc
        if resp.status_code >= 400:
            logger.debug("Webhook answered %s to %s; write remains unconfirmed", resp.status_code, action)
        return Dispatched(action=action, status_code=resp.status_code)

    async def aclose(self) -> None:
        await self._client.aclose()
