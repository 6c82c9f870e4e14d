import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在应用启动前加载环境变量
load_dotenv()

logger = logging.getLogger("marginalia")

_SENTRY_ENABLED = False
try:
    from app.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        logger.info("[Sentry] enabled")
except Exception as e:
    # 零崩溃原则：Sentry 任何异常不得阻塞启动
    logger.warning("[Sentry] init failed (ignored): %s", e)

from app.api.v1 import events, internal, messages
from app.core.middleware import ExceptionHandlerMiddleware
from app.services.runtime import get_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    await runtime.load()
    runtime.broadcaster.start()

    # 开发环境可在 API 进程内直接跑 worker（JOB_WORKER_IN_PROCESS=1）
    worker = runtime.build_worker() if runtime.worker_config.run_in_process else None
    if worker is not None:
        await worker.start()
    try:
        yield
    finally:
        if worker is not None:
            await worker.stop()
        await runtime.broadcaster.stop()


app = FastAPI(
    title="Marginalia API",
    description="Editorial discussion, review workflow and bot automation backend",
    version="1.0.0",
    lifespan=lifespan,
)


def _parse_frontend_origins() -> list[str]:
    """
    允许跨域的前端 Origins：FRONTEND_ORIGIN + FRONTEND_ORIGINS（逗号分隔），缺省 http://localhost:3000。
    """
    raw = ",".join(os.environ.get(name) or "" for name in ("FRONTEND_ORIGIN", "FRONTEND_ORIGINS"))
    origins = [part.strip().rstrip("/") for part in raw.split(",") if part.strip()]
    return list(dict.fromkeys(origins)) or ["http://localhost:3000"]


# === 中间件配置 ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_frontend_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ExceptionHandlerMiddleware)

# === 路由注册 ===
app.include_router(messages.router, prefix="/api/v1")
app.include_router(events.router, prefix="/api/v1")
app.include_router(internal.router, prefix="/api/v1")


@app.get("/")
async def root():
    return {"message": "Marginalia API is running", "docs": "/docs"}
