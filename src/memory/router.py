from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import MemoryServices, get_memory_services
from .models import ContextMessage, ContextPack, ItemRecord, ThreadRecord
from .policy import resolve_context_policy
from .schemas import (
    CleanupResponse,
    ContextMessageView,
    ContextPackView,
    ContextRequest,
    DeleteResponse,
    IngestResponse,
    ItemView,
    MessageEditRequest,
    MessageEvent,
    MessageUpdateEvent,
    OutgoingRequest,
    ReplyRequest,
    ReplyResponse,
    StateUpdateRequest,
    ThreadView,
)
from .threads import parse_thread_id

router = APIRouter(prefix="/api/memory", tags=["memory"])


@router.post("/events/messages", response_model=IngestResponse)
async def ingest_message(
    event: MessageEvent,
    services: MemoryServices = Depends(get_memory_services),
) -> IngestResponse:
    item = await services.ingestor.ingest_create(event, services.settings.bot_user_id)
    return IngestResponse(accepted=item is not None, item=_to_item(item) if item else None)


@router.patch("/events/messages/{source_id}", response_model=DeleteResponse)
async def edit_message(
    source_id: str,
    payload: MessageEditRequest,
    services: MemoryServices = Depends(get_memory_services),
) -> DeleteResponse:
    updated = await services.ingestor.ingest_update(
        MessageUpdateEvent(source_id=source_id, content=payload.content, edited_at=payload.edited_at)
    )
    return DeleteResponse(success=updated)


@router.delete("/events/messages/{source_id}", response_model=DeleteResponse)
async def delete_message(
    source_id: str,
    services: MemoryServices = Depends(get_memory_services),
) -> DeleteResponse:
    return DeleteResponse(success=await services.ingestor.ingest_delete(source_id))


@router.post("/events/outgoing", response_model=IngestResponse)
async def ingest_outgoing(
    payload: OutgoingRequest,
    services: MemoryServices = Depends(get_memory_services),
) -> IngestResponse:
    item = await services.ingestor.ingest_outgoing(payload.message, payload.run_id)
    return IngestResponse(accepted=item is not None, item=_to_item(item) if item else None)


@router.get("/threads/{thread_id}", response_model=ThreadView)
async def get_thread(
    thread_id: str,
    services: MemoryServices = Depends(get_memory_services),
) -> ThreadView:
    _validate_thread_id(thread_id)
    thread = await services.store.get_thread(thread_id) if services.store else None
    if thread is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return _to_thread(thread)


@router.patch("/threads/{thread_id}/state", response_model=ThreadView)
async def update_thread_state(
    thread_id: str,
    payload: StateUpdateRequest,
    services: MemoryServices = Depends(get_memory_services),
) -> ThreadView:
    _validate_thread_id(thread_id)
    if services.store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage not configured")
    await services.store.get_or_create_thread(thread_id)
    thread = await services.store.update_state(thread_id, payload.state)
    if thread is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return _to_thread(thread)


@router.post("/threads/{thread_id}/context", response_model=ContextPackView)
async def build_context(
    thread_id: str,
    payload: ContextRequest,
    services: MemoryServices = Depends(get_memory_services),
) -> ContextPackView:
    _validate_thread_id(thread_id)
    thread = await services.store.get_thread(thread_id) if services.store else None
    policy = resolve_context_policy(thread.state if thread else None, overrides=payload.policy)
    pack = await services.builder.build_context_pack(thread_id, payload.trigger_source_id, policy)
    return _to_pack(pack or ContextPack.empty(thread_id))


@router.post("/threads/{thread_id}/reply", response_model=ReplyResponse)
async def generate_reply(
    thread_id: str,
    payload: ReplyRequest,
    services: MemoryServices = Depends(get_memory_services),
) -> ReplyResponse:
    _validate_thread_id(thread_id)
    reply = await services.responder.generate_reply(
        thread_id, payload.trigger_source_id, policy_overrides=payload.policy
    )
    if reply is None:
        return ReplyResponse(generated=False)
    return ReplyResponse(generated=True, content=reply.content, run_id=reply.run_id)


@router.post("/retention/run", response_model=CleanupResponse)
async def run_retention(services: MemoryServices = Depends(get_memory_services)) -> CleanupResponse:
    return CleanupResponse(purged=await services.retention.run_cleanup_now())


def _validate_thread_id(thread_id: str) -> None:
    try:
        parse_thread_id(thread_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _to_item(record: ItemRecord) -> ItemView:
    return ItemView(
        id=record.id,
        thread_id=record.thread_id,
        created_at=record.created_at,
        type=record.type,
        role=record.role,
        author_id=record.author_id,
        author_name=record.author_name,
        content=record.content,
        metadata=record.metadata,
        source_message_id=record.source_message_id,
        edited_at=record.edited_at,
        is_deleted=record.is_deleted,
    )


def _to_thread(record: ThreadRecord) -> ThreadView:
    return ThreadView(
        thread_id=record.thread_id,
        state=record.state,
        summary=record.summary,
        summary_updated_at=record.summary_updated_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _to_message(message: ContextMessage) -> ContextMessageView:
    return ContextMessageView(
        message_id=message.message_id,
        item_id=message.item_id,
        author_name=message.author_name,
        is_bot=message.is_bot,
        created_at=message.created_at,
        content=message.content,
    )


def _to_pack(pack: ContextPack) -> ContextPackView:
    return ContextPackView(
        thread_id=pack.thread_id,
        transcript=pack.transcript,
        messages=[_to_message(message) for message in pack.messages],
        summary=pack.summary,
        trigger_message_id=pack.trigger_message.message_id if pack.trigger_message else None,
        reply_target_id=pack.reply_target.message_id if pack.reply_target else None,
        selected_item_ids=pack.selected_item_ids,
        message_count=pack.message_count,
        transcript_chars=pack.transcript_chars,
        budget_chars=pack.budget_chars,
        dropped_lines=pack.dropped_lines,
        token_estimate=pack.token_estimate,
    )
