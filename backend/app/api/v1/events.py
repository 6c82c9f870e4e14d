from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.core.errors import NotFoundError
from app.core.roles import get_optional_account
from app.services.runtime import EditorialRuntime, get_runtime

router = APIRouter(prefix="/events", tags=["Events"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/conversations/{conversation_id}")
async def conversation_events(
    conversation_id: str,
    account: Optional[dict] = Depends(get_optional_account),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """
    会话实时事件流（SSE）。

    中文注释:
    - 匿名连接按 public 视角过滤，只会收到 PUBLIC 消息；
    - 浏览器 EventSource 无法设置 Authorization 头，可用 ?access_token= 传 JWT。
    """
    conversation = await runtime.repo.get_conversation(conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")

    subscriber = await runtime.broadcaster.subscribe(
        conversation_id,
        user_id=str(account["id"]) if account else None,
        user_role=account.get("role") if account else None,
        manuscript_id=str(conversation.get("manuscript_id") or "") or None,
    )
    return StreamingResponse(
        runtime.broadcaster.stream(subscriber),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
