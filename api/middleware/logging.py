"""
请求/响应日志中间件
记录每个HTTP请求的状态码与耗时；支付请求体不落日志
"""
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import get_logger


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    日志记录中间件

    功能：
    1. 记录请求信息（方法、路径、查询参数）
    2. 按状态码分级记录响应
    3. 记录未处理异常并重新抛出
    """

    # 跳过日志的路径
    SKIP_PATHS = {"/health", "/api/v1/ompay/healthcheck", "/docs", "/redoc", "/openapi.json"}

    # 查询参数中的敏感字段
    SENSITIVE_FIELDS = {"nonce", "token", "secret", "client_secret", "signature"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.time()
        request_info = {
            "query_params": {
                k: ("***" if k.lower() in self.SENSITIVE_FIELDS else v)
                for k, v in request.query_params.items()
            },
            "user_agent": request.headers.get("User-Agent"),
        }
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.time() - start_time,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        self._log_response(response, duration)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    def _log_response(self, response: Response, duration: float):
        status_code = response.status_code
        if status_code < 400:
            logger.info("request_completed", status_code=status_code, duration=duration)
        elif status_code < 500:
            logger.warning("request_client_error", status_code=status_code, duration=duration)
        else:
            logger.error("request_server_error", status_code=status_code, duration=duration)
