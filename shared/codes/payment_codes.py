"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Gateway outcomes (6xxxx)
    DECLINED = 60000
    TRANSIENT = 60001
    SIGNATURE_ERROR = 60002
    UNSUPPORTED = 60005
    UNDETERMINED = 60006
    CONCURRENT_OPERATION = 60007

    # Local rejections (61xxx), never reach a gateway
    INVALID_REQUEST = 61000
    PAYMENT_METHOD_NOT_FOUND = 61001
    PLUGIN_NOT_FOUND = 61002
    OPERATION_NOT_FOUND = 61003


# Provider→internal status mapping (values are OperationStatus members)
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        # PaymentIntent.status
        "requires_payment_method": "failed",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "processing": "pending",
        "requires_capture": "success",
        "succeeded": "success",
        # void_payment treats a canceled intent as a successful void
        "canceled": "failed",
        # Refund.status
        "pending": "pending",
        "failed": "failed",
    },
    "__external_payment__": {
        "PROCESSED": "success",
        "PENDING": "pending",
        "ERROR": "failed",
    },
}
