"""
Payment operation error taxonomy.

Every error says which of the three outcomes the caller is facing:
definitely did not happen (validation, not found, decline, unsupported),
definitely happened (no error), or unknown (undetermined).
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes.payment_codes import PaymentCode


class PaymentValidationError(DomainValidationException):
    """Malformed request, rejected locally before any gateway contact."""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            message,
            field=field,
            details=details,
            code=PaymentCode.INVALID_REQUEST,
            error_type="PaymentValidationError",
        )


class PaymentMethodNotFoundError(BusinessException):
    def __init__(self, account_id: str, payment_method_id: str | None = None):
        super().__init__(
            code=PaymentCode.PAYMENT_METHOD_NOT_FOUND,
            message="Payment method not found",
            error_type="PaymentMethodNotFound",
            details={"account_id": account_id, "payment_method_id": payment_method_id},
        )


class AdapterNotRegisteredError(BusinessException):
    def __init__(self, plugin_name: str | None):
        super().__init__(
            code=PaymentCode.PLUGIN_NOT_FOUND,
            message=f"No payment plugin registered under '{plugin_name}'",
            error_type="AdapterNotRegistered",
            details={"plugin_name": plugin_name},
        )


class OperationNotFoundError(BusinessException):
    def __init__(self, operation_id: str):
        super().__init__(
            code=PaymentCode.OPERATION_NOT_FOUND,
            message="Operation not found",
            error_type="OperationNotFound",
            details={"operation_id": operation_id},
        )


class UnsupportedOperationError(BusinessException):
    """The adapter lacks the capability; the operation itself did not fail."""

    def __init__(self, operation: str, *, plugin_name: str | None = None):
        super().__init__(
            code=PaymentCode.UNSUPPORTED,
            message=f"Operation '{operation}' is not supported by plugin '{plugin_name}'",
            error_type="UnsupportedOperation",
            details={"operation": operation, "plugin_name": plugin_name},
        )
        self.operation = operation
        self.plugin_name = plugin_name


class BusinessDeclineError(BusinessException):
    """The gateway definitively rejected the operation. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        plugin_name: str | None = None,
        gateway_error_code: str | None = None,
        result: Any = None,
        details: Optional[dict] = None,
    ):
        full_details = {"plugin_name": plugin_name, "gateway_error_code": gateway_error_code}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.DECLINED,
            message=message,
            error_type="BusinessDecline",
            details=full_details,
        )
        self.plugin_name = plugin_name
        self.gateway_error_code = gateway_error_code
        # ResultEnvelope with status=failed when the gateway answered with one
        self.result = result


class TransientTransportError(BusinessException):
    """Network/timeout failure; the orchestrator retries these."""

    def __init__(self, message: str, *, plugin_name: str | None = None, details: Optional[dict] = None):
        full_details = {"plugin_name": plugin_name}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.TRANSIENT,
            message=message,
            error_type="TransientTransport",
            details=full_details,
        )
        self.plugin_name = plugin_name


class UndeterminedOperationError(BusinessException):
    """No definitive gateway answer: money may or may not have moved."""

    def __init__(self, operation_id: str, *, attempts: int = 0, reason: str | None = None, result: Any = None):
        super().__init__(
            code=PaymentCode.UNDETERMINED,
            message=f"Outcome of operation {operation_id} is undetermined; reconcile before retrying",
            error_type="UndeterminedOperation",
            details={"operation_id": operation_id, "attempts": attempts, "reason": reason},
        )
        self.operation_id = operation_id
        self.attempts = attempts
        self.reason = reason
        self.result = result


class ConcurrentOperationError(BusinessException):
    def __init__(self, operation_id: str):
        super().__init__(
            code=PaymentCode.CONCURRENT_OPERATION,
            message=f"Operation {operation_id} is already in flight",
            error_type="ConcurrentOperation",
            details={"operation_id": operation_id},
        )
        self.operation_id = operation_id


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, plugin_name: str, details: Optional[dict] = None):
        full_details = {"plugin_name": plugin_name}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )


class OperationAlreadyResolvedError(DomainValidationException):
    """The ledger record reached a final state before this transition."""

    def __init__(self, operation_id: str, state: str, target: str):
        super().__init__(
            f"operation {operation_id} cannot move from {state} to {target}",
            field="state",
            details={"operation_id": operation_id, "state": state, "target": target},
            error_type="OperationAlreadyResolved",
        )
        self.operation_id = operation_id
        self.state = state
