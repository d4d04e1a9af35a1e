"""Queue endpoints: add, remove, clear, inspect and stream queue events."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...bus import QUEUE_SESSION_ID
from ...models import QueueItem, QueueItemStatus, QueueState
from ..sse import event_stream
from .sessions import SSE_HEADERS, SessionOptionsRequest, get_runtime, to_options

router = APIRouter()


class AddQueueItemRequest(BaseModel):
    feature: str = Field(min_length=1)
    options: SessionOptionsRequest = Field(default_factory=SessionOptionsRequest)


class AddQueueBatchRequest(BaseModel):
    items: list[AddQueueItemRequest] = Field(min_length=1)


class QueueStateResponse(BaseModel):
    """Queue snapshot plus per-status counts."""
    queue: QueueState
    pending: int
    running: int
    completed: int
    failed: int


class QueueItemsResponse(BaseModel):
    items: list[QueueItem]


class QueueClearedResponse(BaseModel):
    removed: int


@router.get("/queue", response_model=QueueStateResponse)
async def get_queue(request: Request) -> QueueStateResponse:
    state = get_runtime(request).queue.get_state()
    return QueueStateResponse(
        queue=state,
        pending=state.count(QueueItemStatus.PENDING),
        running=state.count(QueueItemStatus.RUNNING),
        completed=state.count(QueueItemStatus.COMPLETED),
        failed=state.count(QueueItemStatus.FAILED),
    )


@router.post("/queue", response_model=QueueItem, status_code=201)
async def add_to_queue(request: Request, body: AddQueueItemRequest) -> QueueItem:
    """Append a feature request; processing starts if the lane is idle."""
    runtime = get_runtime(request)
    return runtime.queue.add(body.feature, to_options(runtime, body.options))


@router.post("/queue/batch", response_model=QueueItemsResponse, status_code=201)
async def add_batch_to_queue(request: Request, body: AddQueueBatchRequest) -> QueueItemsResponse:
    runtime = get_runtime(request)
    items = runtime.queue.add_many(
        [(entry.feature, to_options(runtime, entry.options)) for entry in body.items]
    )
    return QueueItemsResponse(items=items)


@router.get("/queue/events")
async def stream_queue_events(request: Request) -> StreamingResponse:
    runtime = get_runtime(request)
    stream = event_stream(
        runtime.bus,
        request.app.state.connections,
        QUEUE_SESSION_ID,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/queue/{item_id}", response_model=QueueItem)
async def get_queue_item(request: Request, item_id: str) -> QueueItem:
    item = get_runtime(request).queue.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item


@router.delete("/queue/{item_id}", response_model=QueueItem)
async def remove_from_queue(request: Request, item_id: str) -> QueueItem:
    """Remove a pending item. Running and finished items stay."""
    queue = get_runtime(request).queue
    item: Optional[QueueItem] = queue.get_item(item_id)
    if item is None or not queue.remove(item_id):
        raise HTTPException(status_code=404, detail="Pending queue item not found")
    return item


@router.delete("/queue", response_model=QueueClearedResponse)
async def clear_queue(request: Request) -> QueueClearedResponse:
    """Remove every pending item."""
    return QueueClearedResponse(removed=get_runtime(request).queue.clear_pending())
