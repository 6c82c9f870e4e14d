from __future__ import annotations

from typing import Any

from app.bots.context import BotContext
from app.bots.registry import BotCommand, BotDefinition
from app.models.bots import ActionHandlerResult, BotOutboundMessage, BotPermission, BotResponse
from app.models.workflow import MessagePrivacy

BOT_ID = "reviewer-checklist"

DEFAULT_ITEMS = (
    "Read the full manuscript and supplementary material",
    "Assess methodology and reproducibility",
    "Check that conclusions follow from the results",
    "Note any conflicts of interest",
)


def _items(ctx: BotContext) -> list[str]:
    configured = ctx.config.get("items")
    if isinstance(configured, list) and configured:
        return [str(i) for i in configured]
    return list(DEFAULT_ITEMS)


def _render(items: list[str], *, done: bool) -> str:
    box = "[x]" if done else "[ ]"
    return "\n".join(["**Reviewer checklist**", ""] + [f"- {box} {item}" for item in items])


def _checklist_message(ctx: BotContext, reviewer_id: str | None) -> BotOutboundMessage:
    action: dict[str, Any] = {
        "id": f"complete-{reviewer_id or 'any'}",
        "label": "Mark checklist complete",
        "handler": {"botId": BOT_ID, "action": "complete_checklist", "params": {}},
        "triggered": False,
    }
    if reviewer_id:
        action["targetUserId"] = reviewer_id
    else:
        action["targetRoles"] = ["reviewer"]
    return BotOutboundMessage(
        content=_render(_items(ctx), done=False),
        privacy=MessagePrivacy.REVIEWER_ONLY.value,
        actions=[action],
    )


async def _on_reviewer_assigned(ctx: BotContext, payload: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.POST_MESSAGES.value)
    return BotResponse(messages=[_checklist_message(ctx, payload.get("reviewerId"))])


async def _checklist(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.POST_MESSAGES.value)
    return BotResponse(messages=[_checklist_message(ctx, ctx.triggered_by)])


async def _complete_checklist(ctx: BotContext, params: dict[str, Any]) -> ActionHandlerResult:
    return ActionHandlerResult(
        success=True,
        updatedContent=_render(_items(ctx), done=True),
        updatedLabel="Checklist complete",
    )


REVIEWER_CHECKLIST_BOT = BotDefinition(
    id=BOT_ID,
    name="Reviewer Checklist",
    description="Posts a review checklist when a reviewer is assigned.",
    permissions=frozenset({BotPermission.READ_MANUSCRIPT.value, BotPermission.POST_MESSAGES.value}),
    commands={"checklist": BotCommand("checklist", "Post the reviewer checklist again.", _checklist)},
    events={"reviewer.assigned": _on_reviewer_assigned},
    action_handlers={"complete_checklist": _complete_checklist},
)
