import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import aiohttp

from face_proctor import config

logger = logging.getLogger(__name__)

MAX_PENDING_EVENTS = 100


class ViolationReporter(Protocol):
    def start(self) -> None:
        ...

    def send(self, event: Dict[str, Any]) -> None:
        """Queue an event for delivery. Must never raise."""
        ...

    async def close(self) -> None:
        ...


class WebSocketReporter:
    """
    Best-effort forwarding of violation events to a remote websocket.

    send() only enqueues; a background task owns the connection. If the
    channel cannot be reached or drops, the failure is logged and later
    events are discarded, local proctoring carries on regardless.
    """

    def __init__(
        self,
        url: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        max_pending: int = MAX_PENDING_EVENTS,
    ):
        self.url = url
        self.session_id = session_id
        self.user_id = user_id

        self.is_running = False
        self.failed = False
        self.sent_count = 0
        self.dropped_count = 0

        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=max_pending)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._task = asyncio.create_task(self._send_loop(), name=f"reporter-{self.session_id}")
        logger.info(f"Violation reporter started for {self.session_id} -> {self.url}")

    def send(self, event: Dict[str, Any]) -> None:
        if self.failed or not self.is_running:
            self.dropped_count += 1
            logger.debug(f"Reporter inactive, dropping event {event.get('id')}")
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_count += 1
            logger.warning(f"Reporter queue full, dropping event {event.get('id')}")

    async def close(self) -> None:
        self.is_running = False
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Violation reporter closed for {self.session_id}")

    async def _send_loop(self) -> None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.url, heartbeat=20) as ws:
                    logger.info(f"Connected to reporting channel: {self.url}")
                    while True:
                        event = await self._queue.get()
                        payload = {"event": "violation", "data": event}
                        await ws.send_str(json.dumps(payload))
                        self.sent_count += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed = True
            self.dropped_count += self._queue.qsize()
            logger.error(f"Reporting channel unavailable ({self.url}): {e}")


def build_reporter(
    session_id: Optional[str],
    user_id: Optional[str] = None,
    base_url: Optional[str] = config.PROCTOR_REPORT_URL,
) -> Optional[WebSocketReporter]:
    if not base_url:
        return None
    url = f"{base_url.rstrip('/')}/{session_id}" if session_id else base_url
    return WebSocketReporter(url, session_id=session_id, user_id=user_id)
