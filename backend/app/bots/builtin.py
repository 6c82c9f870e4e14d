from __future__ import annotations

from app.bots.editorial_bot import EDITORIAL_BOT
from app.bots.registry import BotDefinition, BotRegistry
from app.bots.reviewer_checklist_bot import REVIEWER_CHECKLIST_BOT
from app.bots.submission_check_bot import SUBMISSION_CHECK_BOT

BUILTIN_BOTS: tuple[BotDefinition, ...] = (
    EDITORIAL_BOT,
    REVIEWER_CHECKLIST_BOT,
    SUBMISSION_CHECK_BOT,
)


def build_registry() -> BotRegistry:
    registry = BotRegistry()
    for definition in BUILTIN_BOTS:
        registry.register(definition)
    return registry
