from typing import Any, Optional

from fastapi import APIRouter, Depends

from app.core.roles import get_current_account, get_optional_account
from app.models.message import MessageCreate
from app.services.command_dispatcher import mention_context_from_message
from app.services.runtime import EditorialRuntime, get_runtime

router = APIRouter(tags=["Messages"])


def _viewer(account: Optional[dict]) -> tuple[Optional[str], Optional[str]]:
    if not account:
        return None, None
    return str(account["id"]), account.get("role")


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    account: Optional[dict] = Depends(get_optional_account),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    会话消息列表（已按查看者过滤 + 遮蔽，附带 effectiveVisibility）。
    """
    user_id, role = _viewer(account)
    messages = await runtime.messages.list_visible(conversation_id, user_id=user_id, global_role=role)
    return {"success": True, "data": messages}


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def create_message(
    conversation_id: str,
    payload: MessageCreate,
    account: dict = Depends(get_current_account),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    发消息；消息写入后解析 @bot 提及并分派（分派失败不影响消息本身）。
    """
    user_id, role = _viewer(account)
    message = await runtime.messages.post_user_message(
        conversation_id, user_id=user_id or "", global_role=role, payload=payload
    )
    conversation = await runtime.repo.get_conversation(conversation_id)
    dispatched = await runtime.dispatcher.dispatch_mention(
        payload.content,
        mention_context_from_message(message, manuscript_id=str(conversation["manuscript_id"]), global_role=role),
    )
    return {
        "success": True,
        "data": message,
        "bots": [
            {"botId": d.bot_id, "command": d.command, "queued": d.queued, "ok": d.ok, "jobId": d.job_id}
            for d in dispatched
        ],
    }


@router.post("/messages/{message_id}/actions/{action_id}")
async def trigger_action(
    message_id: str,
    action_id: str,
    account: dict = Depends(get_current_account),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    user_id, role = _viewer(account)
    result = await runtime.messages.trigger_action(message_id, action_id, user_id=user_id or "", global_role=role)
    return {"success": True, "data": result["message"], "errors": result["errors"]}


@router.get("/messages/{message_id}/visibility")
async def message_visibility(
    message_id: str,
    account: Optional[dict] = Depends(get_optional_account),
    runtime: EditorialRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    user_id, role = _viewer(account)
    data = await runtime.messages.get_visibility(message_id, user_id=user_id, global_role=role)
    return {"success": True, "data": data}
