"""
Business codes shared by the domain, core and API layers.

Generic request/system codes live here; gateway and ledger outcomes use
``PaymentCode`` from ``shared.codes.payment_codes``. Both end up in the
``code`` field of the unified response.
"""
from enum import IntEnum

from .payment_codes import PaymentCode


class BusinessCode(IntEnum):
    """Generic codes for errors raised outside the payment flow."""

    SUCCESS = 0

    # Request errors (1xxxx)
    PARAM_ERROR = 10000
    PARAM_MISSING = 10001
    PARAM_TYPE_ERROR = 10002
    PARAM_VALIDATION_ERROR = 10003

    NOT_FOUND = 20006

    # Only produced by HTTP errors from the framework
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003

    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode", "PaymentCode"]
