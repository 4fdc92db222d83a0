"""Publish API routes.

``POST /publish`` relays PublishRun snapshots to the client as
newline-delimited JSON until the run is finished.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Set

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from landing_translator.api.dependencies import get_rows
from landing_translator.api.v1.routes.translation import ItemKeyRequest
from landing_translator.core.orchestration import RowRegistry

logger = logging.getLogger(__name__)

router = APIRouter()

# Publish tasks outlive the request that started them
_publish_tasks: Set[asyncio.Task] = set()


def _publish_task_done(task: asyncio.Task) -> None:
    _publish_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"[API] Publish task failed: {error}")


async def _relay(
    queue: "asyncio.Queue[Dict[str, Any]]", task: asyncio.Task
) -> AsyncIterator[str]:
    """Yield queued snapshots as NDJSON until the publish task ends."""
    getter = None
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield json.dumps(getter.result()) + "\n"
                getter = None
                continue
            break

        while not queue.empty():
            yield json.dumps(queue.get_nowait()) + "\n"

        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            yield json.dumps({"stage": "error", "error": str(error), "finished": True}) + "\n"
    finally:
        if getter is not None:
            getter.cancel()


@router.post("/publish")
async def publish(
    request: ItemKeyRequest,
    rows: RowRegistry = Depends(get_rows),
):
    """Publish a translated row, or join the publish already running."""
    row = await rows.get(request.key())
    if not row.item.id:
        raise HTTPException(status_code=400, detail="Row has not been translated yet")
    if row.busy and row.operation != "publish":
        raise HTTPException(status_code=409, detail=f"Row is busy ({row.operation})")

    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    # Runs to completion even if the client disconnects
    task = asyncio.create_task(row.publish(listener=queue.put_nowait))
    _publish_tasks.add(task)
    task.add_done_callback(_publish_task_done)

    return StreamingResponse(
        _relay(queue, task),
        media_type="application/x-ndjson",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/publish/close")
async def close_publish(
    request: ItemKeyRequest,
    rows: RowRegistry = Depends(get_rows),
):
    """Close the publish dialog of a row; cancels a publish still running."""
    row = rows.peek(request.key())
    if row is None:
        return {"published": False}
    return {"published": await row.close_publish()}
