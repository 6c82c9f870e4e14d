from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Iterable

from app.bots.registry import CommandParameter

# `@name`，排除邮箱地址中的 @（前一个字符不能是字母数字或点）。
_MENTION_RE = re.compile(r"(?<![\w.])@([A-Za-z0-9][A-Za-z0-9_-]*)")
_COMMAND_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")

HELP_COMMAND = "help"


@dataclass
class ParsedMention:
    bot_token: str
    command: str
    params: dict[str, str] = field(default_factory=dict)
    positional: list[str] = field(default_factory=list)
    raw: str = ""


def _tokenize(segment: str) -> list[str]:
    try:
        return shlex.split(segment)
    except ValueError:
        # 引号不成对时退化为按空白切分
        return segment.split()


def parse_command_text(bot_token: str, segment: str) -> ParsedMention:
    tokens = _tokenize(segment.strip())
    command = HELP_COMMAND
    if tokens and "=" not in tokens[0] and _COMMAND_RE.match(tokens[0]):
        command = tokens.pop(0).lower()

    params: dict[str, str] = {}
    positional: list[str] = []
    for token in tokens:
        key, sep, value = token.partition("=")
        if sep and key and re.match(r"^[A-Za-z_][A-Za-z0-9_-]*$", key):
            params[key] = value
        else:
            positional.append(token)
    return ParsedMention(
        bot_token=bot_token.lower(),
        command=command,
        params=params,
        positional=positional,
        raw=segment.strip(),
    )


def parse_mentions(content: str) -> list[ParsedMention]:
    """
    把消息正文拆成若干“提及段”：每段从 @name 之后延伸到下一个 @name 或正文结尾。
    """
    text = content or ""
    matches = list(_MENTION_RE.finditer(text))
    out: list[ParsedMention] = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        # 只取提及所在行，避免把后续段落当作参数。
        segment = text[match.end():end].split("\n", 1)[0]
        out.append(parse_command_text(match.group(1), segment))
    return out


def _coerce(param: CommandParameter, raw: Any) -> tuple[Any, str | None]:
    if param.type == "number":
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None, f"Parameter '{param.name}' must be a number"
        return (int(value) if value.is_integer() else value), None
    if param.type == "boolean":
        lowered = str(raw).strip().lower()
        if lowered in {"true", "yes", "1", "on"}:
            return True, None
        if lowered in {"false", "no", "0", "off"}:
            return False, None
        return None, f"Parameter '{param.name}' must be true or false"
    if param.type == "array":
        if isinstance(raw, (list, tuple)):
            return list(raw), None
        return [part.strip() for part in str(raw).split(",") if part.strip()], None
    if param.type == "enum":
        value = str(raw).strip()
        allowed = {v.lower(): v for v in param.enum_values}
        if value.lower() not in allowed:
            return None, f"Parameter '{param.name}' must be one of: {', '.join(param.enum_values)}"
        return allowed[value.lower()], None
    return str(raw), None


def bind_parameters(
    declared: Iterable[CommandParameter],
    params: dict[str, Any],
    positional: list[str],
) -> tuple[dict[str, Any], list[str]]:
    """
    key=value 优先，其次按声明顺序消费位置参数，最后使用默认值。
    未被消费的位置参数以 `_positional` 原样透传给处理函数。
    """
    values: dict[str, Any] = {}
    errors: list[str] = []
    remaining = list(positional)
    ordered = list(declared)

    for i, param in enumerate(ordered):
        if param.name in params:
            raw: Any = params[param.name]
        elif remaining:
            raw = remaining.pop(0)
            # 最后一个字符串参数吞掉剩余文本（如 reason）
            if i == len(ordered) - 1 and param.type == "string" and remaining:
                raw = " ".join([raw, *remaining])
                remaining = []
        elif param.default is not None:
            values[param.name] = param.default
            continue
        elif param.required:
            errors.append(f"Missing required parameter '{param.name}'")
            continue
        else:
            continue
        value, error = _coerce(param, raw)
        if error:
            errors.append(error)
        else:
            values[param.name] = value

    known = {p.name for p in ordered}
    for key, raw in params.items():
        if key not in known:
            values.setdefault(key, raw)
    values["_positional"] = remaining
    return values, errors
