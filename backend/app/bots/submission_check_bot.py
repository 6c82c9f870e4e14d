from __future__ import annotations

from typing import Any

from app.bots.context import BotContext
from app.bots.registry import BotCommand, BotDefinition, CommandParameter
from app.models.bots import BotOutboundMessage, BotPermission, BotResponse
from app.models.workflow import MessagePrivacy

BOT_ID = "submission-check"

_DEFAULT_REQUIRED = ("SOURCE",)
_DEFAULT_MAX_MB = 50


async def run_checks(ctx: BotContext, *, strict: bool = False) -> BotResponse:
    """
    检查稿件文件是否齐全、大小是否超限；问题写入 errors（流水线据此停止）。
    """
    manuscript = await ctx.get_manuscript()
    files = await ctx.list_files()

    required = [str(t).upper() for t in (ctx.config.get("requiredFileTypes") or _DEFAULT_REQUIRED)]
    max_bytes = int(ctx.config.get("maxFileSizeMb") or _DEFAULT_MAX_MB) * 1024 * 1024

    present = {str(f.get("file_type") or "").upper() for f in files}
    problems: list[str] = []
    for file_type in required:
        if file_type not in present:
            problems.append(f"Missing required file type: {file_type}")
    for f in files:
        if int(f.get("size") or 0) > max_bytes:
            problems.append(f"File too large: {f.get('original_name') or f.get('filename')}")
    if strict and not (manuscript.get("title") or "").strip():
        problems.append("Manuscript title is empty")

    if problems:
        body = "\n".join(f"- {p}" for p in problems)
        return BotResponse(
            messages=[
                BotOutboundMessage(
                    content=f"Submission check found {len(problems)} problem(s):\n{body}",
                    privacy=MessagePrivacy.AUTHOR_VISIBLE.value,
                )
            ],
            errors=problems,
        )
    return BotResponse(
        messages=[
            BotOutboundMessage(
                content=f"Submission check passed ({len(files)} file(s) checked).",
                privacy=MessagePrivacy.EDITOR_ONLY.value,
            )
        ]
    )


async def _check(ctx: BotContext, params: dict[str, Any]) -> BotResponse:
    return await run_checks(ctx, strict=bool(params.get("strict")))


async def _on_submitted(ctx: BotContext, payload: dict[str, Any]) -> BotResponse:
    return await run_checks(ctx)


SUBMISSION_CHECK_BOT = BotDefinition(
    id=BOT_ID,
    name="Submission Check",
    description="Verifies that submitted files are complete and within size limits.",
    permissions=frozenset(
        {
            BotPermission.READ_MANUSCRIPT.value,
            BotPermission.READ_MANUSCRIPT_FILES.value,
            BotPermission.POST_MESSAGES.value,
        }
    ),
    commands={
        "check": BotCommand(
            "check",
            "Check manuscript files.",
            _check,
            parameters=(CommandParameter("strict", type="boolean", default=False),),
            queued=True,
        )
    },
    events={"manuscript.submitted": _on_submitted, "file.uploaded": _on_submitted},
)
