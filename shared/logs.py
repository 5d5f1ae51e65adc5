"""Run log utilities that keep both the database and SSE clients in sync."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, AsyncIterator, Awaitable, Dict, Optional

from sqlalchemy.orm import Session

from .models import RunLog


class LogStreamBroker:
    """In-memory broker that fans out run log entries to SSE consumers.

    A ``None`` item is the end-of-stream marker published when a run reaches a
    status where no further events are expected.
    """

    def __init__(self) -> None:
        self._queues: Dict[uuid.UUID, "asyncio.Queue[Optional[Dict[str, Any]]]"] = {}
        self._lock = asyncio.Lock()

    async def _get_queue(self, run_id: uuid.UUID) -> "asyncio.Queue[Optional[Dict[str, Any]]]":
        async with self._lock:
            if run_id not in self._queues:
                self._queues[run_id] = asyncio.Queue()
            return self._queues[run_id]

    async def publish(self, run_id: uuid.UUID, payload: Dict[str, Any]) -> None:
        queue = await self._get_queue(run_id)
        await queue.put(payload)

    async def close(self, run_id: uuid.UUID) -> None:
        async with self._lock:
            queue = self._queues.pop(run_id, None)
        if queue is not None:
            await queue.put(None)

    async def stream(self, run_id: uuid.UUID) -> AsyncIterator[Dict[str, Any]]:
        queue = await self._get_queue(run_id)
        while True:
            item = await queue.get()
            if item is None:
                return
            yield item


broker = LogStreamBroker()


def _run_async(coro: Awaitable[None]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(coro)
    else:
        loop.create_task(coro)


def serialize_log(entry: RunLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "run_id": str(entry.run_id),
        "message": entry.message,
        "level": entry.level,
        "metadata": entry.data or {},
        "created_at": entry.created_at.isoformat(),
    }


def emit_log(
    session: Session,
    run_id: uuid.UUID,
    message: str,
    *,
    level: str = "info",
    metadata: Dict[str, Any] | None = None,
) -> RunLog:
    """Persist a log entry and notify SSE listeners.

    The session is committed, so callers must only emit once their own unit of
    work is complete.
    """

    entry = RunLog(
        id=uuid.uuid4(),
        run_id=run_id,
        message=message,
        level=level,
        data=metadata or {},
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)

    _run_async(broker.publish(run_id, serialize_log(entry)))
    return entry


def close_stream(run_id: uuid.UUID) -> None:
    """Tell SSE listeners of ``run_id`` that the run has settled."""

    _run_async(broker.close(run_id))
