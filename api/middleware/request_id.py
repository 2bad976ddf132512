"""
Request ID 中间件
用于生成或透传追踪ID，并通过contextvars传递给日志系统
"""
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


# 定义context变量，用于在请求生命周期内共享request_id
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    功能：
    1. 从请求头获取或生成新的request_id
    2. 将request_id与租户ID存入contextvars，供日志系统使用
    3. 在响应头中返回request_id
    """

    HEADER_NAME = "X-Request-ID"
    TENANT_HEADER = "X-Tenant-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = self._get_client_ip(request)

        # 设置到request.state以便在应用内部访问
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        request_id_var.set(request_id)
        client_ip_var.set(client_ip)

        # 绑定到structlog上下文
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )
        tenant_id = request.headers.get(self.TENANT_HEADER)
        if tenant_id:
            structlog.contextvars.bind_contextvars(tenant_id=tenant_id)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        """获取客户端真实IP（考虑代理的情况）"""
        x_forwarded_for = request.headers.get("X-Forwarded-For")
        if x_forwarded_for:
            # 取第一个IP（原始客户端IP）
            return x_forwarded_for.split(",")[0].strip()
        client_ip = request.headers.get("X-Real-IP")
        if client_ip:
            return client_ip
        return request.client.host if request.client else "unknown"


def get_request_id() -> Optional[str]:
    """获取当前请求的request_id，不在请求上下文中则返回None"""
    return request_id_var.get()


def get_client_ip() -> Optional[str]:
    return client_ip_var.get()
