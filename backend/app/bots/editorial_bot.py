from __future__ import annotations

from typing import Any

from app.bots.context import BotContext
from app.bots.registry import BotCommand, BotDefinition, CommandParameter
from app.models.bots import (
    ActionHandlerResult,
    BotAction,
    BotActionType,
    BotOutboundMessage,
    BotPermission,
    BotResponse,
)
from app.models.manuscript import WorkflowPhase
from app.models.workflow import MessagePrivacy

BOT_ID = "editorial-bot"

DECISIONS = ("accept", "reject", "minor_revision", "major_revision")

EDITOR_ROLES = ("editor", "admin")


def _reason(params: dict[str, Any]) -> str | None:
    reason = params.get("reason")
    if reason:
        return str(reason)
    positional = params.get("_positional") or []
    return " ".join(positional) or None


def _decision_response(decision: str, params: dict[str, Any], ctx: BotContext) -> BotResponse:
    ctx.require(BotPermission.MAKE_EDITORIAL_DECISION.value)
    reason = _reason(params)
    summary = f"Editorial decision recorded: **{decision.replace('_', ' ')}**"
    if reason:
        summary += f"\n\nReason: {reason}"
    return BotResponse(
        messages=[BotOutboundMessage(content=summary, privacy=MessagePrivacy.EDITOR_ONLY.value)],
        actions=[
            BotAction(
                type=BotActionType.MAKE_EDITORIAL_DECISION,
                data={"decision": decision, "reason": reason},
            )
        ],
    )


async def _status(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    manuscript = await ctx.get_manuscript()
    assignments = await ctx.list_review_assignments()
    completed = sum(1 for a in assignments if str(a.get("status")).upper() == "COMPLETED")
    lines = [
        f"**{manuscript.get('title') or 'Manuscript'}**",
        f"- Status: {manuscript.get('status')}",
        f"- Workflow phase: {manuscript.get('workflow_phase') or 'n/a'} (round {manuscript.get('workflow_round') or 1})",
        f"- Reviews completed: {completed}/{len(assignments)}",
    ]
    return BotResponse(messages=[BotOutboundMessage(content="\n".join(lines))])


async def _accept(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    return _decision_response("accept", params, ctx)


async def _reject(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    return _decision_response("reject", params, ctx)


async def _revise(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    kind = params.get("type") or "minor"
    return _decision_response(f"{kind}_revision", params, ctx)


async def _publish(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.UPDATE_MANUSCRIPT.value)
    return BotResponse(
        actions=[BotAction(type=BotActionType.UPDATE_MANUSCRIPT_STATUS, data={"status": "PUBLISHED"})]
    )


async def _retract(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.UPDATE_MANUSCRIPT.value)
    return BotResponse(
        actions=[
            BotAction(
                type=BotActionType.UPDATE_MANUSCRIPT_STATUS,
                data={"status": "RETRACTED", "reason": _reason(params)},
            )
        ]
    )


async def _release(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.UPDATE_WORKFLOW.value)
    return BotResponse(
        actions=[
            BotAction(
                type=BotActionType.UPDATE_WORKFLOW_PHASE,
                data={
                    "phase": WorkflowPhase.RELEASED.value,
                    "decisionType": params.get("decision"),
                    "notes": params.get("notes") or _reason(params),
                },
            )
        ]
    )


async def _phase(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.UPDATE_WORKFLOW.value)
    return BotResponse(
        actions=[BotAction(type=BotActionType.UPDATE_WORKFLOW_PHASE, data={"phase": params["phase"]})]
    )


async def _remind(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    ctx.require(BotPermission.SEND_REMINDERS.value)
    return BotResponse(
        actions=[
            BotAction(
                type=BotActionType.SEND_MANUAL_REMINDER,
                data={"assignmentId": params["assignment"]},
            )
        ]
    )


async def _propose(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    """
    发一条带一次性按钮的消息，由编辑点击确认最终决定。
    """
    decision = params["decision"]
    actions = [
        {
            "id": f"confirm-{decision}",
            "label": f"Confirm {decision.replace('_', ' ')}",
            "style": "primary",
            "handler": {"botId": BOT_ID, "action": "confirm_decision", "params": {"decision": decision}},
            "targetRoles": ["editor", "admin"],
            "triggered": False,
        }
    ]
    return BotResponse(
        messages=[
            BotOutboundMessage(
                content=f"Proposed decision: **{decision.replace('_', ' ')}**. An editor must confirm.",
                privacy=MessagePrivacy.EDITOR_ONLY.value,
                actions=actions,
            )
        ]
    )


async def _confirm_decision(ctx: BotContext, params: dict[str, Any]) -> ActionHandlerResult:
    decision = str(params.get("decision") or "")
    if decision not in DECISIONS:
        return ActionHandlerResult(success=False, error=f"Unknown decision: {decision}")
    ctx.require(BotPermission.MAKE_EDITORIAL_DECISION.value)
    label = decision.replace("_", " ")
    return ActionHandlerResult(
        success=True,
        updatedContent=f"Decision confirmed: **{label}**.",
        updatedLabel=f"Confirmed: {label}",
        actions=[BotAction(type=BotActionType.MAKE_EDITORIAL_DECISION, data={"decision": decision})],
    )


EDITORIAL_BOT = BotDefinition(
    id=BOT_ID,
    name="Editorial Bot",
    description="Records editorial decisions and manages the review workflow.",
    permissions=frozenset(
        {
            BotPermission.READ_MANUSCRIPT.value,
            BotPermission.POST_MESSAGES.value,
            BotPermission.UPDATE_MANUSCRIPT.value,
            BotPermission.MAKE_EDITORIAL_DECISION.value,
            BotPermission.UPDATE_WORKFLOW.value,
            BotPermission.SEND_REMINDERS.value,
        }
    ),
    commands={
        "status": BotCommand("status", "Show manuscript status and review progress.", _status),
        "accept": BotCommand(
            "accept",
            "Accept the manuscript.",
            _accept,
            parameters=(CommandParameter("reason"),),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "reject": BotCommand(
            "reject",
            "Reject the manuscript.",
            _reject,
            parameters=(CommandParameter("reason"),),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "revise": BotCommand(
            "revise",
            "Request a minor or major revision.",
            _revise,
            parameters=(
                CommandParameter("type", type="enum", enum_values=("minor", "major"), default="minor"),
                CommandParameter("reason"),
            ),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "publish": BotCommand(
            "publish",
            "Publish an accepted manuscript.",
            _publish,
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "retract": BotCommand(
            "retract",
            "Retract a published manuscript.",
            _retract,
            parameters=(CommandParameter("reason"),),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "release": BotCommand(
            "release",
            "Release reviews to the authors.",
            _release,
            parameters=(CommandParameter("decision"), CommandParameter("notes")),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "phase": BotCommand(
            "phase",
            "Move the review workflow to another phase.",
            _phase,
            parameters=(
                CommandParameter(
                    "phase",
                    type="enum",
                    required=True,
                    enum_values=tuple(p.value for p in WorkflowPhase),
                ),
            ),
            queued=True,
            roles=EDITOR_ROLES,
        ),
        "remind": BotCommand(
            "remind",
            "Send a deadline reminder for a review assignment.",
            _remind,
            parameters=(CommandParameter("assignment", required=True),),
            roles=EDITOR_ROLES,
        ),
        "propose": BotCommand(
            "propose",
            "Post a decision for an editor to confirm.",
            _propose,
            parameters=(CommandParameter("decision", type="enum", required=True, enum_values=DECISIONS),),
            roles=EDITOR_ROLES,
        ),
    },
    action_handlers={"confirm_decision": _confirm_decision},
)
