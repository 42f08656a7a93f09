"""Out-of-band permission requests bridged into the chat loop."""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass

from gateway.exceptions import PermissionTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionResponse:
    approved: bool = False
    remember: bool = False


class PermissionFuture:
    """One-shot slot for a PermissionResponse, fillable from any thread."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._future: Future = Future()

    def deliver(self, response: PermissionResponse) -> bool:
        if self._future.done():
            return False
        try:
            self._future.set_result(response)
        except InvalidStateError:
            return False
        return True

    def cancel(self) -> None:
        self._future.cancel()

    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: float) -> PermissionResponse:
        try:
            return await asyncio.wait_for(asyncio.wrap_future(self._future), timeout)
        except asyncio.TimeoutError as exc:
            raise PermissionTimeoutError(
                f"permission request {self.request_id} not answered within {timeout:.0f}s"
            ) from exc


class PermissionManager:
    """Tracks pending permission requests and their delivered responses."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[str, PermissionFuture] = {}
        self._responses: dict[str, PermissionResponse] = {}

    def create_request(self, request_id: str) -> PermissionFuture:
        future = PermissionFuture(request_id)
        with self._lock:
            previous = self._pending.get(request_id)
            self._pending[request_id] = future
        if previous is not None:
            previous.cancel()
        return future

    def set_response(self, request_id: str, response: PermissionResponse) -> bool:
        """Deliver a response if the request is still pending; otherwise drop it."""
        with self._lock:
            future = self._pending.pop(request_id, None)
            if future is None or not future.deliver(response):
                logger.info("Dropping permission response for %s: no pending request", request_id)
                return False
            self._responses[request_id] = response
        logger.info(
            "Permission response for %s: approved=%s remember=%s",
            request_id, response.approved, response.remember,
        )
        return True

    def get_response(self, request_id: str) -> PermissionResponse | None:
        with self._lock:
            return self._responses.get(request_id)

    def remove_request(self, request_id: str) -> None:
        with self._lock:
            future = self._pending.pop(request_id, None)
            self._responses.pop(request_id, None)
        if future is not None:
            future.cancel()

    def pending_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)
