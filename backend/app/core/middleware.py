import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.errors import EditorialError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("marginalia")


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获 + 访问日志。

    中文注释:
    - EditorialError 及子类按自身 status_code 返回 `{"detail", "type", ...extra}`；
    - HTTPException 保持 FastAPI 语义；
    - 其余异常统一 500，记录完整堆栈；
    - SSE 长连接只在建立时记一条日志（耗时没有意义）。
    """

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        path = request.url.path
        try:
            response = await call_next(request)
        except EditorialError as exc:
            logger.info("[HTTP] %s %s -> %s %s: %s", request.method, path, exc.status_code, exc.error_type, exc.detail)
            return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
        except HTTPException as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "type": "http_exception"})
        except Exception as e:
            logger.error("[HTTP] %s %s unhandled: %s", request.method, path, e, exc_info=True)
            return JSONResponse(status_code=500, content={"detail": "Internal server error", "type": "server_error"})

        if response.headers.get("content-type", "").startswith("text/event-stream"):
            logger.info("[HTTP] %s %s -> stream opened", request.method, path)
        else:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info("[HTTP] %s %s -> %s (%.1fms)", request.method, path, response.status_code, elapsed_ms)
        return response
