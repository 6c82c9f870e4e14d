from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from app.core.bot_permissions import normalize_permissions
from app.models.bots import ActionHandlerResult, BotResponse

if TYPE_CHECKING:
    from app.bots.context import BotContext

logger = logging.getLogger("marginalia.bots")

CommandHandler = Callable[["BotContext", dict[str, Any]], Awaitable[BotResponse]]
EventHandler = Callable[["BotContext", dict[str, Any]], Awaitable[BotResponse]]
ActionHandlerFn = Callable[["BotContext", dict[str, Any]], Awaitable[ActionHandlerResult]]


@dataclass(frozen=True)
class CommandParameter:
    name: str
    type: str = "string"  # string | number | boolean | enum | array
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class BotCommand:
    name: str
    description: str
    handler: CommandHandler
    parameters: tuple[CommandParameter, ...] = ()
    queued: bool = False
    examples: tuple[str, ...] = ()
    # 允许调用的稿件内角色（ViewerRole 值）；为空表示任何参与者
    roles: tuple[str, ...] = ()

    def allows_role(self, role: str) -> bool:
        return not self.roles or role in self.roles

    def usage(self, bot_name: str) -> str:
        parts = [f"@{bot_name} {self.name}"]
        for p in self.parameters:
            parts.append(f"{p.name}=<{p.type}>" if p.required else f"[{p.name}=<{p.type}>]")
        return " ".join(parts)


@dataclass(frozen=True)
class BotDefinition:
    """
    一个 bot 的静态声明：能力集合 + 命令 / 事件 / 动作处理函数。
    """

    id: str
    name: str
    description: str
    permissions: frozenset[str]
    commands: dict[str, BotCommand] = field(default_factory=dict)
    events: dict[str, EventHandler] = field(default_factory=dict)
    action_handlers: dict[str, ActionHandlerFn] = field(default_factory=dict)
    version: str = "1.0.0"

    @property
    def is_command_bot(self) -> bool:
        return bool(self.commands)


@dataclass(frozen=True)
class InstalledBot:
    definition: BotDefinition
    permissions: frozenset[str]
    is_enabled: bool
    config: dict[str, Any]
    user_id: Optional[str]

    @property
    def id(self) -> str:
        return self.definition.id


def _normalize_name(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").strip().lower()).strip("-")


class BotRegistry:
    """
    bot id -> 定义 + 安装信息 的显式查找表。

    中文注释:
    1) 定义在进程启动时 register()；安装状态由 load_installations() 从 bot_installations 表刷新。
    2) 实际生效的能力 = 安装记录声明的能力 ∩ bot 定义声明的能力（安装方不能授予 bot 自己未声明的能力）。
    3) 提及解析顺序：精确 id -> 规范化名称 -> 名称首词（大小写不敏感）-> id 前缀（name-）。
    """

    def __init__(self) -> None:
        self._definitions: dict[str, BotDefinition] = {}
        self._installed: dict[str, InstalledBot] = {}

    def register(self, definition: BotDefinition) -> None:
        self._definitions[definition.id] = definition

    def definition(self, bot_id: str) -> Optional[BotDefinition]:
        return self._definitions.get(bot_id)

    def install(
        self,
        bot_id: str,
        *,
        permissions: Optional[list[str]] = None,
        is_enabled: bool = True,
        config: Optional[dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> InstalledBot:
        definition = self._definitions.get(bot_id)
        if definition is None:
            raise KeyError(bot_id)
        declared = normalize_permissions(definition.permissions)
        granted = normalize_permissions(permissions if permissions is not None else definition.permissions)
        effective = declared if "*" in granted else frozenset(granted & declared)
        installed = InstalledBot(
            definition=definition,
            permissions=effective,
            is_enabled=bool(is_enabled),
            config=dict(config or {}),
            user_id=user_id,
        )
        self._installed[bot_id] = installed
        return installed

    async def load_installations(self, repo: Any) -> int:
        rows = await repo.list_bot_installations()
        loaded: dict[str, InstalledBot] = {}
        for row in rows:
            bot_id = str(row.get("bot_id") or "")
            if bot_id not in self._definitions:
                logger.warning("[BotRegistry] installation for unknown bot skipped: %s", bot_id)
                continue
            loaded[bot_id] = self.install(
                bot_id,
                permissions=row.get("permissions"),
                is_enabled=bool(row.get("is_enabled", True)),
                config=row.get("config") or {},
                user_id=row.get("user_id"),
            )
        self._installed = loaded
        return len(loaded)

    def get(self, bot_id: str, *, enabled_only: bool = True) -> Optional[InstalledBot]:
        installed = self._installed.get(bot_id)
        if installed is None:
            return None
        if enabled_only and not installed.is_enabled:
            return None
        return installed

    def installed(self, *, enabled_only: bool = True) -> list[InstalledBot]:
        return [b for b in self._installed.values() if b.is_enabled or not enabled_only]

    def with_event(self, event_name: str) -> list[InstalledBot]:
        return [b for b in self.installed() if event_name in b.definition.events]

    def resolve_mention(self, token: str) -> Optional[InstalledBot]:
        name = (token or "").strip().lower()
        if not name:
            return None
        bots = self.installed()

        for bot in bots:
            if bot.id.lower() == name:
                return bot
        for bot in bots:
            if _normalize_name(bot.definition.name) == name:
                return bot
        for bot in bots:
            words = bot.definition.name.strip().lower().split()
            if words and words[0] == name:
                return bot
        for bot in bots:
            if bot.id.lower().startswith(f"{name}-"):
                return bot
        return None

    def bot_user_ids(self) -> set[str]:
        return {b.user_id for b in self._installed.values() if b.user_id}
