from __future__ import annotations

from typing import Any, Optional


class EditorialError(Exception):
    """
    领域异常基类。

    中文注释:
    - 服务层只抛领域异常，不直接依赖 FastAPI 的 HTTPException；
      由 ExceptionHandlerMiddleware 统一映射为 `{"detail", "type"}` JSON。
    - status_code / error_type 在子类上声明，便于 API 层与任务层复用同一套异常。
    """

    status_code = 400
    error_type = "editorial_error"

    def __init__(self, detail: str, *, extra: Optional[dict[str, Any]] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.detail, "type": self.error_type}
        if self.extra:
            payload.update(self.extra)
        return payload


class ValidationError(EditorialError):
    """Bad input shape or parameters; nothing was written."""

    status_code = 422
    error_type = "validation_error"


class PermissionDeniedError(EditorialError):
    status_code = 403
    error_type = "permission_denied"


class MissingPermission(PermissionDeniedError):
    """A bot tried to use a capability it was not installed with."""

    error_type = "missing_permission"

    def __init__(self, permission: str, *, bot_id: Optional[str] = None) -> None:
        who = f"Bot {bot_id}" if bot_id else "Bot"
        super().__init__(
            f"{who} lacks required permission: {permission}",
            extra={"permission": permission},
        )
        self.permission = permission
        self.bot_id = bot_id


class NotFoundError(EditorialError):
    status_code = 404
    error_type = "not_found"


class StateTransitionError(EditorialError):
    status_code = 409
    error_type = "state_transition_error"

    def __init__(self, detail: str, *, from_status: Optional[str] = None, to_status: Optional[str] = None) -> None:
        extra: dict[str, Any] = {}
        if from_status is not None:
            extra["from_status"] = from_status
        if to_status is not None:
            extra["to_status"] = to_status
        super().__init__(detail, extra=extra)
        self.from_status = from_status
        self.to_status = to_status


class ActionAlreadyTriggeredError(ValidationError):
    status_code = 409
    error_type = "action_already_triggered"


class TransientJobError(EditorialError):
    """
    任务处理失败（可重试）。

    中文注释:
    - 由 JobWorker 捕获并计入 attempts；耗尽后保留为 failed，不会静默丢弃。
    """

    status_code = 503
    error_type = "transient_job_error"
