"""
API依赖项 - 调用上下文与支付编排服务
"""
from typing import Optional

from fastapi import Header, Request

from application.dtos.payments import CallContext
from application.services.payment_orchestrator import PaymentOrchestrator
from domain.payment.exceptions import PaymentValidationError


async def get_call_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_reason_code: Optional[str] = Header(default=None),
    x_comments: Optional[str] = Header(default=None),
) -> CallContext:
    """从请求头构造租户调用上下文（X-Tenant-ID 必填）"""
    if not x_tenant_id:
        raise PaymentValidationError("X-Tenant-ID header is required", field="X-Tenant-ID")
    return CallContext(
        tenant_id=x_tenant_id,
        user_name=x_user_name,
        reason_code=x_reason_code,
        comments=x_comments,
        request_id=getattr(request.state, "request_id", None),
    )


async def get_payment_orchestrator(request: Request) -> PaymentOrchestrator:
    """编排服务在应用启动时创建，挂在 app.state 上"""
    return request.app.state.payment_orchestrator
