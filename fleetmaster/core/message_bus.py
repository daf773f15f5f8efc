"""In-memory topic bus with wildcard subscribers and request/response helpers."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .errors import RequestFailedError, RequestTimeoutError
from .models import Message, utcnow_iso

logger = logging.getLogger(__name__)

WILDCARD = "*"

Handler = Callable[[Message], Any]


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class MessageBus:
    """Synchronous publish/subscribe hub keyed by topic string."""

    def __init__(self, max_log_size: int = 10_000) -> None:
        self.max_log_size = max_log_size
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._wildcard: List[Handler] = []
        self._log: List[Message] = []

    def publish(self, sender: str, topic: str, payload: Any = None) -> str:
        """Record the message and hand it to exact-topic then wildcard subscribers."""
        message = Message(
            id=_short_id("msg"),
            sender=sender,
            topic=topic,
            payload=payload,
            timestamp=utcnow_iso(),
        )
        self._log.append(message)
        if len(self._log) > self.max_log_size:
            keep = max(1, self.max_log_size // 2)
            self._log = self._log[-keep:]

        # Copy so handlers may unsubscribe while being called.
        for handler in list(self._subscribers.get(topic, ())):
            self._dispatch(handler, message)
        for handler in list(self._wildcard):
            self._dispatch(handler, message)
        return message.id

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` and return a function that removes it again."""
        handlers = self._wildcard if topic == WILDCARD else self._subscribers[topic]
        handlers.append(handler)

        def unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                return
            if topic != WILDCARD and not handlers:
                self._subscribers.pop(topic, None)

        return unsubscribe

    def subscriber_count(self, topic: str) -> int:
        if topic == WILDCARD:
            return len(self._wildcard)
        return len(self._subscribers.get(topic, ()))

    def get_recent(self, count: int = 50) -> List[Message]:
        if count <= 0:
            return []
        return self._log[-count:]

    def __len__(self) -> int:
        return len(self._log)

    @asynccontextmanager
    async def deliver(self, topic: str) -> AsyncIterator[asyncio.Queue[Message]]:
        """Context manager yielding a queue fed with every message on ``topic``."""
        inbox: asyncio.Queue[Message] = asyncio.Queue()
        unsubscribe = self.subscribe(topic, inbox.put_nowait)
        try:
            yield inbox
        finally:
            unsubscribe()

    async def request_response(
        self,
        sender: str,
        target: str,
        payload: Any = None,
        timeout_ms: float = 5000,
    ) -> Any:
        """Publish a request to ``target`` and wait for the correlated response."""
        request_id = _short_id("req")
        response_topic = f"agent.response.{request_id}"

        async with self.deliver(response_topic) as inbox:
            self.publish(
                sender,
                f"agent.request.{target}",
                {"request_id": request_id, "response_topic": response_topic, "payload": payload},
            )
            try:
                reply = await asyncio.wait_for(inbox.get(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError as exc:
                raise RequestTimeoutError(target, timeout_ms) from exc

        body = reply.payload if isinstance(reply.payload, dict) else {"data": reply.payload}
        if body.get("error"):
            raise RequestFailedError(str(body["error"]), request_id=request_id)
        return body.get("data")

    def respond_to_request(
        self,
        sender: str,
        request_id: str,
        response_topic: str,
        data: Any = None,
        error: Optional[str] = None,
    ) -> str:
        return self.publish(
            sender,
            response_topic,
            {"request_id": request_id, "data": data, "error": error},
        )

    @staticmethod
    def _dispatch(handler: Handler, message: Message) -> None:
        try:
            handler(message)
        except Exception:  # noqa: BLE001
            logger.exception("Bus subscriber failed on topic %s", message.topic)
