"""Fire-and-forget customer notifications.

Notifications are emails sent by separate serverless functions. They are
best effort: a failure is logged and never affects the order mutation that
triggered it.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import httpx

from order_lifecycle.core.logger import setup_logger

logger = setup_logger(__name__)


class NotificationDispatcher:
    """Posts ``{"orderId": ...}`` to ``{base_url}/functions/v1/<function>``."""

    def __init__(
        self,
        base_url: Optional[str],
        service_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.service_key = service_key
        self.timeout = timeout
        self.transport = transport
        self.enabled = bool(self.base_url)
        self._pending: Set[asyncio.Task] = set()

        if not self.enabled:
            logger.info("Notifications disabled (no FUNCTIONS_BASE_URL configured)")

    def notify(self, function_name: str, order_id: str, extra: Optional[Dict[str, Any]] = None) -> Optional[asyncio.Task]:
        """Schedule a notification without waiting for it."""
        if not self.enabled:
            logger.debug(f"Skipping {function_name} for order {order_id}, notifications disabled")
            return None

        task = asyncio.create_task(self.send(function_name, order_id, extra))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(self, function_name: str, order_id: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Call a notification function.

        Returns:
            Dict with keys: success (bool), function (str), last_error (str|None)
        """
        payload = {"orderId": order_id}
        if extra:
            payload.update(extra)

        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/functions/v1/{function_name}",
                    json=payload,
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            last_error = f"HTTP {e.response.status_code}: {e.response.text}"
            logger.warning(f"Notification {function_name} failed for order {order_id}: {last_error}")
            return {"success": False, "function": function_name, "last_error": last_error}
        except httpx.HTTPError as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Notification {function_name} failed for order {order_id}: {last_error}")
            return {"success": False, "function": function_name, "last_error": last_error}
        except Exception as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning(f"Unexpected error sending {function_name} for order {order_id}: {last_error}", exc_info=True)
            return {"success": False, "function": function_name, "last_error": last_error}

        logger.info(f"Notification {function_name} sent for order {order_id}")
        return {"success": True, "function": function_name, "last_error": None}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for in-flight notifications, cancelling what is left after ``timeout``."""
        if not self._pending:
            return

        logger.info(f"Waiting for {len(self._pending)} pending notifications...")
        done, pending = await asyncio.wait(self._pending, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} notifications still running at shutdown")
