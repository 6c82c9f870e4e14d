import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    is_staging: bool
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        # 平台层（Docker/Vercel）负责切换 SUPABASE_URL，这里只读取。
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key
        )

# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class SMTPConfig:
    """
    SMTP 配置（从环境变量读取）

    中文注释:
    1) 该配置只存在于后端进程内，严禁泄露到前端。
    2) 允许在本地/测试环境缺省（此时邮件发送逻辑会优雅降级为“只记录日志”）。
    """

    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str
    use_starttls: bool

    @staticmethod
    def from_env() -> Optional["SMTPConfig"]:
        host = (os.environ.get("SMTP_HOST") or "").strip()
        if not host:
            return None

        port = _env_int("SMTP_PORT", 587)
        user = (os.environ.get("SMTP_USER") or "").strip() or None
        password = (os.environ.get("SMTP_PASSWORD") or "").strip() or None

        from_email = (
            os.environ.get("SMTP_FROM_EMAIL") or user or "no-reply@marginalia.local"
        ).strip()

        use_starttls = _env_bool("SMTP_USE_STARTTLS", True)

        return SMTPConfig(
            host=host,
            port=port,
            user=user,
            password=password,
            from_email=from_email,
            use_starttls=use_starttls,
        )


@dataclass(frozen=True)
class ResendConfig:
    """
    Resend 邮件服务配置（优先级低于 SMTP）。
    """

    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = (os.environ.get("RESEND_API_KEY") or "").strip()
        if not api_key:
            return None
        sender = (
            os.environ.get("RESEND_SENDER") or "Marginalia <no-reply@marginalia.local>"
        ).strip()
        return ResendConfig(api_key=api_key, sender=sender)


def get_admin_api_key() -> Optional[str]:
    """
    内部 Cron 接口鉴权 Key

    中文注释:
    - 仅用于 `/api/v1/internal/*`，避免暴露到公网用户接口。
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None


@dataclass(frozen=True)
class WorkerConfig:
    """
    后台任务队列（jobs 表）配置

    中文注释:
    1) concurrency: 同一进程内并行处理的任务数（默认 3）。
    2) max_attempts: 默认最大尝试次数，耗尽后任务保留为 failed 以便人工排查。
    3) backoff: base * 2^(attempts-1) 秒，封顶 backoff_max_sec。
    4) run_in_process: 是否在 API 进程内启动 worker（默认关闭，生产环境单独运行 python -m app.core.job_worker）。
    """

    concurrency: int
    max_attempts: int
    poll_interval_sec: float
    backoff_base_sec: float
    backoff_max_sec: float
    deadline_scan_hour_utc: int
    run_in_process: bool

    @staticmethod
    def from_env() -> "WorkerConfig":
        return WorkerConfig(
            concurrency=max(1, _env_int("JOB_WORKER_CONCURRENCY", 3)),
            max_attempts=max(1, _env_int("JOB_MAX_ATTEMPTS", 3)),
            poll_interval_sec=max(0.1, _env_float("JOB_POLL_INTERVAL_SEC", 1.0)),
            backoff_base_sec=max(0.0, _env_float("JOB_BACKOFF_BASE_SEC", 30.0)),
            backoff_max_sec=max(0.0, _env_float("JOB_BACKOFF_MAX_SEC", 3600.0)),
            deadline_scan_hour_utc=min(23, max(0, _env_int("DEADLINE_SCAN_HOUR_UTC", 8))),
            run_in_process=_env_bool("JOB_WORKER_IN_PROCESS", False),
        )


@dataclass(frozen=True)
class BroadcastConfig:
    """
    SSE 实时推送配置（心跳 / 清理周期 / 判定失活阈值 / 单订阅者队列长度）。

    中文注释:
    - relay_enabled: 事件同时写入 realtime_events 表，其它进程（job worker、其它 API 实例）产生的事件
      由 API 进程轮询该表后推给本进程的订阅者；
    - relay_poll_sec / relay_batch: 轮询间隔与单次读取条数；relay_retention_sec: 过期事件的清理阈值。
    """

    heartbeat_sec: float
    sweep_sec: float
    stale_sec: float
    queue_size: int
    relay_enabled: bool = False
    relay_poll_sec: float = 1.0
    relay_batch: int = 200
    relay_retention_sec: float = 3600.0

    @staticmethod
    def from_env() -> "BroadcastConfig":
        return BroadcastConfig(
            heartbeat_sec=max(1.0, _env_float("SSE_HEARTBEAT_SEC", 30.0)),
            sweep_sec=max(1.0, _env_float("SSE_SWEEP_SEC", 60.0)),
            stale_sec=max(1.0, _env_float("SSE_STALE_SEC", 120.0)),
            queue_size=max(1, _env_int("SSE_QUEUE_SIZE", 100)),
            relay_enabled=_env_bool("SSE_RELAY_ENABLED", True),
            relay_poll_sec=max(0.1, _env_float("SSE_RELAY_POLL_SEC", 1.0)),
            relay_batch=max(1, _env_int("SSE_RELAY_BATCH", 200)),
            relay_retention_sec=max(60.0, _env_float("SSE_RELAY_RETENTION_SEC", 3600.0)),
        )


@dataclass(frozen=True)
class BotConfig:
    """
    Bot 执行配置

    中文注释:
    - execution_timeout_sec: 单次命令执行超时（默认 30 秒）。
    - service token 使用独立密钥签名，严禁复用 SUPABASE_SERVICE_ROLE_KEY。
    """

    execution_timeout_sec: float
    service_token_secret: Optional[str]
    service_token_ttl_sec: int

    @staticmethod
    def from_env() -> "BotConfig":
        secret = (
            os.environ.get("BOT_SERVICE_TOKEN_SECRET")
            or os.environ.get("SECRET_KEY")
            or ""
        ).strip() or None
        return BotConfig(
            execution_timeout_sec=max(1.0, _env_float("BOT_EXECUTION_TIMEOUT_SEC", 30.0)),
            service_token_secret=secret,
            service_token_ttl_sec=max(30, _env_int("BOT_SERVICE_TOKEN_TTL_SEC", 300)),
        )


@dataclass(frozen=True)
class AccessConfig:
    """
    公开访问策略

    中文注释:
    - 已 ACCEPTED 但尚未 PUBLISHED 的稿件文件是否对匿名用户可见，属于期刊政策，
      因此显式配置（默认关闭）。
    """

    public_can_view_accepted_files: bool
    workflow_config_ttl_sec: float

    @staticmethod
    def from_env() -> "AccessConfig":
        return AccessConfig(
            public_can_view_accepted_files=_env_bool("PUBLIC_CAN_VIEW_ACCEPTED_FILES", False),
            workflow_config_ttl_sec=max(0.0, _env_float("WORKFLOW_CONFIG_TTL_SEC", 60.0)),
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    Sentry 配置（缺省关闭，零崩溃原则）。
    """

    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        enabled = _env_bool("SENTRY_ENABLED", bool(dsn))
        environment = (
            os.environ.get("SENTRY_ENVIRONMENT") or os.environ.get("APP_ENV") or "development"
        ).strip()
        return SentryConfig(
            enabled=enabled,
            dsn=dsn,
            environment=environment,
            traces_sample_rate=min(1.0, max(0.0, _env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0))),
        )


def public_base_url() -> str:
    """
    前端站点地址（用于邮件中的链接）。
    """

    return (os.environ.get("FRONTEND_BASE_URL") or "http://localhost:3000").strip().rstrip("/")
