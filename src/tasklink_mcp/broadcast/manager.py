"""Fan named events out to filtered subscribers."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .handles import SubscriberHandle, format_sse

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 15.0

ProjectSessionResolver = Callable[[str], Iterable[str]]


@dataclass(slots=True)
class Subscriber:
    id: str
    handle: SubscriberHandle
    session_filter: str | None
    project_filter: str | None
    connected_at: datetime


class BroadcastManager:
    """Owns the set of live subscribers and delivers events to them.

    A subscriber may filter on one session or one project. Project filters are
    resolved to session ids through ``project_sessions`` at delivery time, so a
    session bound after the subscriber connected is still covered.
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        project_sessions: ProjectSessionResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._project_sessions = project_sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subscribers: dict[str, Subscriber] = {}
        self._lock = threading.Lock()
        self._heartbeat_task: asyncio.Task | None = None

    def set_project_session_resolver(self, resolver: ProjectSessionResolver) -> None:
        self._project_sessions = resolver

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def subscribers(self) -> list[Subscriber]:
        with self._lock:
            return list(self._subscribers.values())

    def add_subscriber(
        self,
        subscriber_id: str,
        handle: SubscriberHandle,
        session_filter: str | None = None,
        project_filter: str | None = None,
    ) -> Subscriber:
        subscriber = Subscriber(
            id=subscriber_id,
            handle=handle,
            session_filter=session_filter or None,
            project_filter=project_filter or None,
            connected_at=self._clock(),
        )
        with self._lock:
            replaced = self._subscribers.get(subscriber_id)
            self._subscribers[subscriber_id] = subscriber
        if replaced is not None:
            self._close_handle(replaced)

        handle.on_close(lambda: self._discard(subscriber))
        logger.info(
            "Subscriber connected",
            extra={
                "subscriber_id": subscriber_id,
                "session_filter": subscriber.session_filter,
                "project_filter": subscriber.project_filter,
            },
        )
        self._deliver(
            subscriber,
            format_sse("connected", {"clientId": subscriber_id, "timestamp": subscriber.connected_at.isoformat()}),
        )
        self._ensure_heartbeat()
        return subscriber

    def remove_subscriber(self, subscriber_id: str) -> bool:
        with self._lock:
            subscriber = self._subscribers.pop(subscriber_id, None)
        if subscriber is None:
            return False
        self._close_handle(subscriber)
        return True

    def _discard(self, subscriber: Subscriber) -> None:
        with self._lock:
            if self._subscribers.get(subscriber.id) is not subscriber:
                return
            del self._subscribers[subscriber.id]
        logger.info("Subscriber disconnected", extra={"subscriber_id": subscriber.id})

    def _close_handle(self, subscriber: Subscriber) -> None:
        try:
            subscriber.handle.close()
        except Exception as exc:
            logger.debug(
                "Closing subscriber handle failed",
                extra={"subscriber_id": subscriber.id, "error": str(exc)},
            )

    def should_deliver(self, subscriber: Subscriber, session_id: str | None) -> bool:
        if subscriber.session_filter is None and subscriber.project_filter is None:
            return True
        if session_id is not None and subscriber.session_filter == session_id:
            return True
        if subscriber.project_filter is not None and session_id is not None and self._project_sessions:
            try:
                if session_id in set(self._project_sessions(subscriber.project_filter)):
                    return True
            except Exception as exc:
                logger.warning(
                    "Project session lookup failed",
                    extra={"project_id": subscriber.project_filter, "error": str(exc)},
                )
        return session_id is None

    def _deliver(self, subscriber: Subscriber, message: str) -> bool:
        try:
            subscriber.handle.send(message)
        except Exception as exc:
            with self._lock:
                if self._subscribers.get(subscriber.id) is subscriber:
                    del self._subscribers[subscriber.id]
            logger.info(
                "Dropped subscriber after failed write",
                extra={"subscriber_id": subscriber.id, "error": str(exc)},
            )
            self._close_handle(subscriber)
            return False
        return True

    def broadcast(self, event_name: str, payload: Any, session_id: str | None = None) -> int:
        """Deliver ``event_name`` to every matching subscriber; return the delivery count."""

        message = format_sse(event_name, payload)
        delivered = 0
        for subscriber in self.subscribers():
            if self.should_deliver(subscriber, session_id) and self._deliver(subscriber, message):
                delivered += 1
        return delivered

    def send_heartbeat(self) -> int:
        count = self.subscriber_count
        message = format_sse("heartbeat", {"timestamp": self._clock().isoformat(), "subscriberCount": count})
        return sum(1 for subscriber in self.subscribers() if self._deliver(subscriber, message))

    def _ensure_heartbeat(self) -> None:
        if self.heartbeat_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; heartbeat not started")
            return
        self._heartbeat_task = loop.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._heartbeat_interval)
                self.send_heartbeat()
                if self.subscriber_count == 0:
                    logger.debug("No subscribers left; stopping heartbeat")
                    break
        finally:
            if self._heartbeat_task is asyncio.current_task():
                self._heartbeat_task = None

    def shutdown(self) -> None:
        """Stop the heartbeat and close every subscriber. Safe to call twice."""

        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done():
            task.cancel()
        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            self._close_handle(subscriber)
        if subscribers:
            logger.info("Broadcast manager shut down", extra={"closed": len(subscribers)})


__all__ = ["BroadcastManager", "Subscriber", "DEFAULT_HEARTBEAT_INTERVAL"]
