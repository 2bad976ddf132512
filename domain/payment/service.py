"""
支付领域服务 - 请求校验与幂等指纹
"""
from __future__ import annotations

import hashlib
from decimal import Decimal

from application.dtos.payments import OperationKind, OperationRequest
from domain.payment.entity import IdempotencyRecord
from domain.payment.exceptions import PaymentValidationError


def _blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


class PaymentDomainService:
    """
    支付领域服务 - 不访问网关的纯业务规则

    职责：
    1. 请求形状校验（金额符号、币种、必填ID）
    2. 计算幂等指纹，防止同一 operation_id 被不同参数复用
    3. 为账本构建首个记录
    """

    @staticmethod
    def validate(req: OperationRequest) -> None:
        """
        业务规则：
        1. operation_id / account_id / payment_id / payment_method_id 必填
        2. 除 void 外，金额必填且不能为负，币种必填
        3. 金额小数位不能超过币种最小单位
        """
        for name in ("operation_id", "account_id", "payment_id", "payment_method_id"):
            if _blank(getattr(req, name)):
                raise PaymentValidationError(f"{name} is required", field=name)

        if req.kind == OperationKind.VOID:
            # void never moves an amount; amount/currency are ignored
            return

        if req.amount is None:
            raise PaymentValidationError(f"amount is required for {req.kind.value}", field="amount")
        if not req.amount.is_finite():
            raise PaymentValidationError("amount must be a finite number", field="amount")
        if req.amount < 0:
            raise PaymentValidationError(
                f"amount must not be negative: {req.amount}",
                field="amount",
                details={"amount": str(req.amount)},
            )
        if req.currency is None:
            raise PaymentValidationError(f"currency is required for {req.kind.value}", field="currency")

        exponent = req.currency.minor_unit_exponent
        if req.amount != req.amount.quantize(Decimal(1).scaleb(-exponent)):
            raise PaymentValidationError(
                f"{req.currency.value} amounts allow at most {exponent} decimal places",
                field="amount",
                details={"amount": str(req.amount), "currency": req.currency.value},
            )

    @staticmethod
    def fingerprint(req: OperationRequest) -> str:
        # Stable, reproducible digest of the business identifiers (no timestamp)
        amount = "" if req.kind == OperationKind.VOID or req.amount is None else str(req.amount.normalize())
        currency = "" if req.kind == OperationKind.VOID or req.currency is None else req.currency.value
        base = "|".join(
            [
                req.kind.value,
                req.account_id,
                req.payment_id,
                req.payment_method_id or "",
                amount,
                currency,
            ]
        )
        return hashlib.sha256(base.encode("utf-8")).hexdigest()

    @classmethod
    def new_record(cls, req: OperationRequest) -> IdempotencyRecord:
        return IdempotencyRecord(
            operation_id=req.operation_id,
            kind=req.kind.value,
            request_fingerprint=cls.fingerprint(req),
            request=req.model_dump(mode="json"),
        )
