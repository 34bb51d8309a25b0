"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 按方法区分的安全重试
- 响应体解析（JSON / "DONE" / 原始文本）
- 请求/响应日志
- 超时控制

任何可解析的响应（包括 4xx/5xx）都会返回给调用方；只有网络错误、超时
或无法解析的非 2xx 响应才会抛出 GatewayTransportError。
"""
from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger
from domain.common.exceptions import GatewayTransportError


logger = get_logger(__name__)


class HTTPMethod(Enum):
    """HTTP方法枚举"""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    data: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    request_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        """判断请求是否成功"""
        return 200 <= self.status_code < 300


class RetryableAPIError(Exception):
    """可重试的服务端错误（仅用于幂等请求），重试耗尽后返回最后一次响应"""

    def __init__(self, response: APIResponse):
        super().__init__(f"Transient API error with status {response.status_code}")
        self.response = response


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def parse_body(response: httpx.Response) -> Dict[str, Any]:
    """将响应体解析为字典

    - 空响应体 -> {}
    - "DONE" -> {"status": "DONE"}
    - JSON 对象 -> 原样；JSON 数组/标量 -> {"data": value}
    - 非 JSON 的 2xx -> {"rawResponse": text}
    - 非 JSON 的非 2xx -> GatewayTransportError
    """
    text = response.text
    stripped = text.strip()
    if not stripped:
        return {}
    if stripped == "DONE":
        return {"status": "DONE"}
    try:
        data = response.json()
    except ValueError as exc:
        if response.is_success:
            return {"rawResponse": text}
        raise GatewayTransportError(
            f"Unparsable response body with status {response.status_code}",
            status_code=response.status_code,
            url=str(response.request.url),
        ) from exc
    if isinstance(data, dict):
        return data
    return {"data": data}


class BaseAPIClient:
    """
    REST API客户端基类

    子类提供具体端点；所有请求共用一个 httpx.AsyncClient
    """

    def __init__(
        self,
        base_url: str,
        timeout: Union[float, httpx.Timeout] = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        headers: Optional[Dict[str, str]] = None,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        初始化API客户端

        Args:
            base_url: API基础URL
            timeout: 请求超时时间（秒或 httpx.Timeout）
            max_retries: 最大重试次数
            retry_delay: 重试基础退避（秒）
            headers: 默认请求头
            verify_ssl: 是否验证SSL证书
            transport: 自定义传输层（测试时注入 httpx.MockTransport）
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout if isinstance(timeout, httpx.Timeout) else httpx.Timeout(timeout)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.verify_ssl = verify_ssl
        self._transport = transport

        # 设置默认请求头
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "ompay-engine/1.0",
        }
        if headers:
            self.default_headers.update(headers)

        self._client: Optional[httpx.AsyncClient] = None

    @property
    async def client(self) -> httpx.AsyncClient:
        """获取或创建HTTP客户端"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify_ssl,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """关闭HTTP客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _build_url(self, endpoint: str) -> str:
        """构建完整URL"""
        endpoint = endpoint.lstrip('/')
        return f"{self.base_url}/{endpoint}"

    @staticmethod
    def _retry_predicate(method: str):
        """连接建立失败对所有方法可重试；超时与 5xx 只对 GET 重试"""
        idempotent = method == HTTPMethod.GET.value

        def _should_retry(exc: BaseException) -> bool:
            if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
                return True
            if not idempotent:
                return False
            return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, RetryableAPIError))

        return _should_retry

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "api_request_retry",
            attempt=retry_state.attempt_number,
            error=str(exc) if exc else None,
        )

    async def _request(
        self,
        method: Union[str, HTTPMethod],
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> APIResponse:
        """
        发送HTTP请求

        Returns:
            APIResponse: 任何可解析的响应

        Raises:
            GatewayTransportError: 网络错误、超时或无法解析的非 2xx 响应
        """
        if isinstance(method, HTTPMethod):
            method = method.value

        url = self._build_url(endpoint)

        request_headers = {**self.default_headers}
        if headers:
            request_headers.update(headers)

        logger.debug("api_request", method=method, url=url, params=params)

        async def _send_once() -> APIResponse:
            start_time = datetime.now()
            client = await self.client
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=request_headers,
            )
            elapsed = (datetime.now() - start_time).total_seconds() * 1000

            api_response = APIResponse(
                status_code=response.status_code,
                data=parse_body(response),
                headers=dict(response.headers),
                elapsed_ms=elapsed,
                request_id=response.headers.get("x-request-id"),
            )
            logger.debug(
                "api_response",
                method=method,
                url=url,
                status_code=api_response.status_code,
                elapsed_ms=round(elapsed, 2),
            )

            if api_response.status_code in RETRY_STATUS_CODES and method == HTTPMethod.GET.value:
                raise RetryableAPIError(api_response)
            return api_response

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_delay,
                min=self.retry_delay,
                max=self.retry_delay * 8,
            ),
            retry=retry_if_exception(self._retry_predicate(method)),
            before_sleep=self._log_retry,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await _send_once()
        except RetryableAPIError as exc:
            return exc.response
        except httpx.TimeoutException as exc:
            logger.error("api_request_timeout", method=method, url=url)
            raise GatewayTransportError("Request timed out", url=url) from exc
        except httpx.HTTPError as exc:
            logger.error("api_request_failed", method=method, url=url, error=str(exc))
            raise GatewayTransportError(f"Network error: {exc}", url=url) from exc

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        """GET请求"""
        return await self._request(HTTPMethod.GET, endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> APIResponse:
        """POST请求"""
        return await self._request(HTTPMethod.POST, endpoint, **kwargs)

    async def put(self, endpoint: str, **kwargs) -> APIResponse:
        """PUT请求"""
        return await self._request(HTTPMethod.PUT, endpoint, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> APIResponse:
        """DELETE请求"""
        return await self._request(HTTPMethod.DELETE, endpoint, **kwargs)
