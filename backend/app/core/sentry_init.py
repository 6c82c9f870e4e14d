from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode

from app.core.config import SentryConfig

FILTERED = "[Filtered]"

# 凭证类字段：任何位置出现都替换
_CREDENTIAL_KEYS = {
    "password",
    "access_token",
    "refresh_token",
    "token",
    "jwt",
    "authorization",
    "cookie",
    "set-cookie",
    "service_role_key",
    "service_token",
    "bot_token",
    "x-admin-key",
}

# 讨论内容：消息正文与邮件正文可能暴露审稿人身份，不出进程
_CONTENT_KEYS = {"content", "html_body", "text_body", "reason", "notes"}


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k).strip().lower()
            out[str(k)] = FILTERED if key in _CREDENTIAL_KEYS or key in _CONTENT_KEYS else _scrub(v)
        return out
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def _scrub_query_string(raw: Any) -> Any:
    # SSE 连接通过 ?access_token= 传 JWT
    if not isinstance(raw, str) or not raw:
        return raw
    pairs = [(k, FILTERED if k.lower() in _CREDENTIAL_KEYS else v) for k, v in parse_qsl(raw, keep_blank_values=True)]
    return urlencode(pairs)


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """
    上报前清洗事件。

    中文注释:
    - 请求体一律不上传（消息正文、bot 参数都在 body 里）；
    - 凭证类 header / query 参数去掉；
    - user 只保留 id，邮箱/用户名可能把匿名审稿人关联回真实身份。
    """
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {k: v for k, v in headers.items() if str(k).strip().lower() not in _CREDENTIAL_KEYS}
        for field in ("cookies", "data", "body"):
            if field in request:
                request[field] = FILTERED
        if "query_string" in request:
            request["query_string"] = _scrub_query_string(request["query_string"])

    user = event.get("user")
    if isinstance(user, dict):
        event["user"] = {"id": user["id"]} if user.get("id") else {}

    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)
    return event


def init_sentry(component: str = "api") -> bool:
    """
    初始化 Sentry；API 进程与 job worker 共用，component 作为 tag 区分来源。

    未配置 DSN 或显式禁用时返回 False。初始化异常由调用方捕获，不得阻塞启动。
    """
    cfg = SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    options: dict[str, Any] = {
        "dsn": cfg.dsn,
        "environment": cfg.environment,
        "traces_sample_rate": cfg.traces_sample_rate,
        "integrations": [FastApiIntegration(), AsyncioIntegration()],
        "send_default_pii": False,
        "before_send": _before_send,
        "max_request_body_size": "never",
        "include_local_variables": False,
    }
    sentry_sdk.init(**options)
    sentry_sdk.set_tag("component", component)
    return True


def report_job_failure(job: dict[str, Any], error_msg: str) -> None:
    """
    任务重试耗尽时上报一条 Sentry 消息（未初始化时为空操作）。
    payload 不上报，只带 task / id / attempts。
    """
    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job.task", str(job.get("task") or "unknown"))
        scope.set_extra("job.id", job.get("id"))
        scope.set_extra("job.attempts", job.get("attempts"))
        sentry_sdk.capture_message(f"Job permanently failed: {error_msg}", level="error")
