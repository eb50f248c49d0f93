"""Streaming chat completion endpoint."""

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import StreamingResponse

from app.core.kv_store import KeyValueStore
from app.dependencies import (
    CurrentUser,
    get_completion_service,
    get_kv_store,
    get_optional_user,
)
from app.schemas.completion_schema import CompletionRequest
from app.services.completion_service import Caller, CompletionService
from app.services.rate_limit_service import get_client_ip

router = APIRouter(prefix="/api/chat", tags=["completion"])

CompletionServiceDep = Annotated[CompletionService, Depends(get_completion_service)]
KeyValueStoreDep = Annotated[KeyValueStore, Depends(get_kv_store)]
OptionalUserDep = Annotated[CurrentUser | None, Depends(get_optional_user)]


@router.post("")
async def chat_completion(
    body: CompletionRequest,
    request: Request,
    completion_service: CompletionServiceDep,
    store: KeyValueStoreDep,
    current_user: OptionalUserDep,
    background_tasks: BackgroundTasks,
) -> StreamingResponse:
    """Stream a completion as Server-Sent Events.

    Rate limiting, model access and context budgeting fail before the
    stream starts; usage is debited in the background once it ends.
    """
    if current_user is not None:
        caller = Caller(identifier=str(current_user.id), user_id=current_user.id)
    else:
        caller = Caller(identifier=get_client_ip(request))

    prepared = await completion_service.prepare(body, caller)
    background_tasks.add_task(
        completion_service.finalize_usage,
        prepared,
        store,
        body.conversation_tokens,
    )
    return StreamingResponse(
        completion_service.stream(prepared),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
