from __future__ import annotations

import time
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger

DEFAULT_HUB = "remoteswehub"


def webapp_topic(session_id: str) -> str:
    return f"webapp/worker/{session_id}"


@runtime_checkable
class EventPublisher(Protocol):
    async def publish(self, topic: str, event: dict) -> None: ...


class HttpEventPublisher:
    """Pushes events to a pub/sub hub over its REST ``:send`` endpoint."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        *,
        hub: str = DEFAULT_HUB,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = f"{endpoint.rstrip('/')}/api/hubs/{hub}/:send"
        self._client = client or httpx.AsyncClient(
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=10.0,
        )

    async def publish(self, topic: str, event: dict) -> None:
        resp = await self._client.post(self._url, json={"channel": topic, "data": event})
        if resp.status_code >= 400:
            raise RuntimeError(f"HTTP {resp.status_code} -- {resp.text[:500]}")
        logger.debug(f"Event sent: topic={topic}, type={event.get('type')}")

    async def close(self) -> None:
        await self._client.aclose()


class ConsolePublisher:
    """Prints user-facing messages; other events only reach the debug log."""

    def __init__(self, *, prefix: str = "assistant> "):
        self._prefix = prefix

    async def publish(self, topic: str, event: dict) -> None:
        if event.get("type") == "message" and event.get("message"):
            print(f"{self._prefix}{event['message']}", flush=True)
        else:
            logger.debug(f"[{topic}] {event}")


class Notifier:
    """Fan-out of webapp events to every configured publisher. Never raises."""

    def __init__(self, publishers: list[EventPublisher] | None = None):
        self._publishers = list(publishers or [])

    def add(self, publisher: EventPublisher) -> None:
        self._publishers.append(publisher)

    async def send_webapp_event(self, session_id: str, event: dict[str, Any]) -> None:
        payload = {**event, "timestamp": int(time.time() * 1000), "workerId": session_id}
        topic = webapp_topic(session_id)
        for publisher in self._publishers:
            try:
                await publisher.publish(topic, payload)
            except Exception as ex:
                logger.warning(f"Failed to send {event.get('type')} event via {type(publisher).__name__}: {ex}")

    async def send_system_message(self, session_id: str, message: str) -> None:
        await self.send_webapp_event(session_id, {"type": "message", "role": "assistant", "message": message})
