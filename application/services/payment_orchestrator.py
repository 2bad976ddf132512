"""
Application service orchestrating payment operations across gateway adapters.

This class depends only on the PaymentGateway port, the ledger/repository
contracts and DTOs. Adapters, ledger and repository implementations are
provided by infrastructure and injected from the composition root (API/tasks),
keeping dependencies one-way.

Money-moving operations (authorize, capture, charge, void, refund) go through
the idempotency ledger: one gateway side effect per operation_id. Everything
else (queries, searches, payment methods, hosted pages, notifications) only
routes through the adapter registry.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, TypeVar

from structlog.contextvars import bound_contextvars
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    CallContext,
    HostedPageDescriptorFields,
    HostedPageFormDescriptor,
    HostedPageNotification,
    OperationKind,
    OperationRequest,
    OperationStatus,
    Page,
    PaymentMethodDetail,
    PaymentMethodInfo,
    ResultEnvelope,
)
from application.ports.payment_gateway import KIND_CAPABILITY, KIND_METHOD, Capability, PaymentGateway
from application.services.adapter_registry import AdapterRegistry
from application.services.pagination import MAX_PAGE_SIZE, PaginationCursor
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.payment.entity import (
    Completed,
    Failed,
    IdempotencyRecord,
    InFlight,
    OperationState,
    PaymentMethodDescriptor,
)
from domain.payment.exceptions import (
    BusinessDeclineError,
    ConcurrentOperationError,
    OperationAlreadyResolvedError,
    OperationNotFoundError,
    PaymentMethodNotFoundError,
    PaymentValidationError,
    TransientTransportError,
    UndeterminedOperationError,
)
from domain.payment.repository import IdempotencyLedger, PaymentMethodRepository
from domain.payment.service import PaymentDomainService


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff: float = 0.2
    max_backoff: float = 5.0
    # Upper bound for a single adapter call, in seconds
    call_timeout: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.call_timeout <= 0:
            raise ValueError("call_timeout must be positive")


@dataclass
class ReconciliationReport:
    examined: int = 0
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    still_in_flight: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def _error_detail(exc: BusinessException) -> dict[str, Any]:
    detail = exc.to_dict()
    detail["plugin_name"] = getattr(exc, "plugin_name", None)
    detail["gateway_error_code"] = getattr(exc, "gateway_error_code", None)
    return detail


class PaymentOrchestrator:
    def __init__(
        self,
        registry: AdapterRegistry,
        ledger: IdempotencyLedger,
        payment_methods: PaymentMethodRepository,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.payment_methods = payment_methods
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_page_size = max_page_size
        # Shielded dispatch tasks must stay referenced until they finish
        self._dispatches: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Money-moving operations
    # ------------------------------------------------------------------
    async def authorize(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        return await self._execute_kind(OperationKind.AUTHORIZE, req, ctx)

    async def capture(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        return await self._execute_kind(OperationKind.CAPTURE, req, ctx)

    async def charge(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        return await self._execute_kind(OperationKind.CHARGE, req, ctx)

    async def void(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        return await self._execute_kind(OperationKind.VOID, req, ctx)

    async def refund(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        return await self._execute_kind(OperationKind.REFUND, req, ctx)

    async def _execute_kind(self, kind: OperationKind, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        if req.kind != kind:
            raise PaymentValidationError(
                f"request kind '{req.kind.value}' does not match operation '{kind.value}'",
                field="kind",
            )
        return await self.execute(req, ctx)

    async def execute(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        """Run one money-moving operation at most once per operation_id.

        Raises PaymentValidationError, PaymentMethodNotFoundError,
        UnsupportedOperationError or BusinessDeclineError when the operation
        definitely did not happen, and UndeterminedOperationError when the
        outcome is unknown. ConcurrentOperationError means another attempt
        for the same operation_id holds the ledger record.
        """
        PaymentDomainService.validate(req)
        with bound_contextvars(operation_id=req.operation_id, operation_kind=req.kind.value):
            candidate = PaymentDomainService.new_record(req)
            decision = await self.ledger.begin_or_reuse(candidate)

            if decision.record.request_fingerprint != candidate.request_fingerprint:
                raise PaymentValidationError(
                    f"operation_id {req.operation_id} was already used with different parameters",
                    field="operation_id",
                )
            if isinstance(decision, Completed):
                logger.info("payment_operation_replayed", state="completed")
                return decision.result
            if isinstance(decision, Failed):
                logger.info("payment_operation_replayed", state="failed")
                raise self._replayed_decline(decision.record)
            if isinstance(decision, InFlight):
                existing = decision.record
                logger.warning(
                    "payment_operation_concurrent",
                    attempts=existing.attempts,
                    undetermined=existing.undetermined,
                )
                if existing.undetermined:
                    raise UndeterminedOperationError(
                        existing.operation_id,
                        attempts=existing.attempts,
                        reason=(existing.error or {}).get("reason"),
                    )
                raise ConcurrentOperationError(existing.operation_id)

            logger.info(
                "payment_operation_started",
                account_id=req.account_id,
                payment_id=req.payment_id,
                tenant_id=ctx.tenant_id,
            )
            # Cancelling the caller only abandons the wait; the attempt and its
            # ledger bookkeeping run to completion.
            task = asyncio.ensure_future(self._run_fresh(req, ctx))
            self._dispatches.add(task)
            task.add_done_callback(self._forget_dispatch)
            return await asyncio.shield(task)

    def _forget_dispatch(self, task: asyncio.Task) -> None:
        self._dispatches.discard(task)
        if not task.cancelled():
            # Mark the exception retrieved when the caller stopped waiting
            task.exception()

    async def _run_fresh(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        try:
            return await self._dispatch(req, ctx)
        except OperationAlreadyResolvedError as exc:
            # A notification or reconciliation settled the record while the
            # gateway call was running: its outcome is the answer.
            logger.info("payment_operation_resolved_elsewhere", state=exc.state)
            return await self._settled(req.operation_id)

    async def _settled(self, operation_id: str) -> ResultEnvelope:
        record = await self.get_operation(operation_id)
        if record.state == OperationState.FAILED:
            raise self._replayed_decline(record)
        return record.result  # type: ignore[return-value]

    async def _dispatch(self, req: OperationRequest, ctx: CallContext) -> ResultEnvelope:
        try:
            descriptor = await self._descriptor(req.account_id, req.payment_method_id)
            adapter = self.registry.require(descriptor.plugin_name, KIND_CAPABILITY[req.kind])
        except Exception:
            # Never reached a gateway: free the key for a corrected retry
            await self.ledger.release(req.operation_id)
            raise

        props = self._merged_props(descriptor, req.properties)
        outbound = req.model_copy(update={"properties": props})
        call = getattr(adapter, KIND_METHOD[req.kind])

        async def record_attempt() -> None:
            await self.ledger.record_attempt(req.operation_id, adapter.plugin_name, props)

        try:
            envelope = await self._with_retry(
                lambda: call(outbound, ctx),
                plugin_name=adapter.plugin_name,
                before_attempt=record_attempt,
            )
        except OperationAlreadyResolvedError:
            raise
        except BusinessDeclineError as exc:
            return await self._declined(req, exc)
        except TransientTransportError as exc:
            return await self._undetermined(req, f"retries exhausted: {exc.message}")
        except BusinessException as exc:
            # Definitive answer other than a decline, e.g. the adapter refused
            await self.ledger.fail(req.operation_id, _error_detail(exc))
            logger.warning("payment_operation_failed", plugin_name=adapter.plugin_name, error=exc.message)
            raise
        except Exception as exc:
            logger.error("payment_operation_adapter_error", plugin_name=adapter.plugin_name, exc_info=True)
            return await self._undetermined(req, f"unexpected adapter error: {type(exc).__name__}: {exc}")

        problem = self._result_problem(req, envelope)
        if problem:
            return await self._undetermined(req, problem)

        envelope = self._normalize(req, envelope)
        if envelope.status == OperationStatus.FAILED:
            return await self._declined(
                req,
                BusinessDeclineError(
                    envelope.gateway_error or "Gateway declined the operation",
                    plugin_name=adapter.plugin_name,
                    gateway_error_code=envelope.gateway_error_code,
                    result=envelope,
                ),
            )

        await self.ledger.complete(req.operation_id, envelope)
        logger.info(
            "payment_operation_completed",
            plugin_name=adapter.plugin_name,
            status=envelope.status.value,
            gateway_reference_id=envelope.gateway_reference_id,
        )
        return envelope

    async def _declined(self, req: OperationRequest, exc: BusinessDeclineError) -> ResultEnvelope:
        result = exc.result
        if not isinstance(result, ResultEnvelope):
            result = ResultEnvelope(
                status=OperationStatus.FAILED,
                gateway_error=exc.message,
                gateway_error_code=exc.gateway_error_code,
            )
        result = self._normalize(req, result)
        exc.result = result
        await self.ledger.fail(req.operation_id, _error_detail(exc), result=result)
        logger.warning(
            "payment_operation_declined",
            plugin_name=exc.plugin_name,
            gateway_error_code=exc.gateway_error_code,
            error=exc.message,
        )
        raise exc

    async def _undetermined(self, req: OperationRequest, reason: str) -> ResultEnvelope:
        record = await self.ledger.mark_undetermined(req.operation_id, reason)
        envelope = ResultEnvelope(
            status=OperationStatus.UNDETERMINED,
            kind=req.kind,
            operation_id=req.operation_id,
            payment_id=req.payment_id,
            currency=req.currency,
            gateway_error=reason,
        )
        logger.error("payment_operation_undetermined", attempts=record.attempts, reason=reason)
        raise UndeterminedOperationError(req.operation_id, attempts=record.attempts, reason=reason, result=envelope)

    @staticmethod
    def _replayed_decline(record: IdempotencyRecord) -> BusinessDeclineError:
        error = record.error or {}
        return BusinessDeclineError(
            error.get("message") or "Operation previously failed",
            plugin_name=error.get("plugin_name") or record.plugin_name,
            gateway_error_code=error.get("gateway_error_code"),
            result=record.result,
            details={"replayed": True},
        )

    # ------------------------------------------------------------------
    # Result validation
    # ------------------------------------------------------------------
    @staticmethod
    def _result_problem(req: OperationRequest, envelope: Any) -> Optional[str]:
        """Return why an adapter result cannot be trusted, or None."""
        if not isinstance(envelope, ResultEnvelope):
            return f"adapter returned {type(envelope).__name__} instead of a result envelope"
        if envelope.status == OperationStatus.UNDETERMINED:
            return "adapter reported an undetermined status"
        if envelope.kind is not None and envelope.kind != req.kind:
            return f"adapter answered for '{envelope.kind.value}' instead of '{req.kind.value}'"
        amount = envelope.amount_processed
        if amount is not None and amount < 0:
            return f"adapter reported a negative amount: {amount}"
        if req.kind == OperationKind.VOID:
            return None
        if envelope.currency is not None and envelope.currency != req.currency:
            return f"currency mismatch: requested {req.currency.value}, adapter reported {envelope.currency.value}"
        if amount is not None and req.amount is not None and amount > req.amount:
            return f"adapter processed {amount}, more than the requested {req.amount}"
        return None

    @staticmethod
    def _normalize(req: OperationRequest, envelope: ResultEnvelope) -> ResultEnvelope:
        update: dict[str, Any] = {
            "operation_id": req.operation_id,
            "kind": req.kind,
            "payment_id": req.payment_id,
        }
        if req.kind != OperationKind.VOID:
            if envelope.currency is None:
                update["currency"] = req.currency
            if envelope.amount_processed is None and envelope.status != OperationStatus.FAILED:
                update["amount_processed"] = req.amount
        return envelope.model_copy(update=update)

    # ------------------------------------------------------------------
    # Retry / timeout
    # ------------------------------------------------------------------
    async def _with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        plugin_name: str,
        before_attempt: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> T:
        policy = self.retry_policy

        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "payment_operation_retry",
                plugin_name=plugin_name,
                attempt=state.attempt_number,
                max_attempts=policy.max_attempts,
                error=str(exc),
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(multiplier=policy.base_backoff, max=policy.max_backoff),
            retry=retry_if_exception_type(TransientTransportError),
            before_sleep=log_retry,
            reraise=True,
        ):
            with attempt:
                if before_attempt is not None:
                    await before_attempt()
                return await self._bounded(fn(), plugin_name=plugin_name)

    async def _bounded(self, aw: Awaitable[T], *, plugin_name: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.retry_policy.call_timeout)
        except asyncio.TimeoutError as exc:
            raise TransientTransportError(
                f"gateway call timed out after {self.retry_policy.call_timeout}s",
                plugin_name=plugin_name,
                details={"timeout": self.retry_policy.call_timeout},
            ) from exc

    # ------------------------------------------------------------------
    # Adapter resolution
    # ------------------------------------------------------------------
    async def _descriptor(self, account_id: str, payment_method_id: Optional[str]) -> PaymentMethodDescriptor:
        if payment_method_id:
            descriptor = await self.payment_methods.get(account_id, payment_method_id)
        else:
            descriptor = await self.payment_methods.get_default(account_id)
        if descriptor is None:
            raise PaymentMethodNotFoundError(account_id, payment_method_id)
        return descriptor

    @staticmethod
    def _merged_props(descriptor: Optional[PaymentMethodDescriptor], properties: Optional[Mapping[str, str]]) -> dict[str, str]:
        merged: dict[str, str] = {}
        if descriptor is not None:
            merged.update(descriptor.gateway_props)
            if descriptor.external_payment_method_id:
                merged.setdefault("external_payment_method_id", descriptor.external_payment_method_id)
        merged.update(properties or {})
        return merged

    async def _resolve(
        self,
        capability: Capability,
        *,
        account_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> tuple[PaymentGateway, dict[str, str]]:
        descriptor = None
        if plugin_name is None and account_id and payment_method_id:
            descriptor = await self._descriptor(account_id, payment_method_id)
            plugin_name = descriptor.plugin_name
        adapter = self.registry.require(plugin_name, capability)
        return adapter, self._merged_props(descriptor, properties)

    # ------------------------------------------------------------------
    # Ledger access / reconciliation
    # ------------------------------------------------------------------
    async def get_operation(self, operation_id: str) -> IdempotencyRecord:
        record = await self.ledger.get(operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id)
        return record

    async def purge_operation(self, operation_id: str) -> None:
        if not await self.ledger.purge(operation_id):
            raise OperationNotFoundError(operation_id)
        logger.info("payment_operation_purged", operation_id=operation_id)

    async def reconcile(self, operation_id: str, ctx: CallContext) -> ResultEnvelope:
        """Resolve an in-flight record from what the gateway reports.

        Terminal records are returned as they are. When the gateway has no
        matching, trustworthy answer the record stays in flight and
        UndeterminedOperationError is raised.
        """
        record = await self.get_operation(operation_id)
        if record.state == OperationState.COMPLETED:
            return record.result  # type: ignore[return-value]
        if record.state == OperationState.FAILED:
            return record.result or ResultEnvelope(
                status=OperationStatus.FAILED,
                operation_id=record.operation_id,
                gateway_error=(record.error or {}).get("message"),
            )

        req = OperationRequest.model_validate(record.request)
        with bound_contextvars(operation_id=req.operation_id, operation_kind=req.kind.value):
            capability = Capability.GET_REFUND_INFO if req.kind == OperationKind.REFUND else Capability.GET_PAYMENT_INFO
            if record.plugin_name:
                # Ask the plugin the attempt went to, with what it was sent
                adapter = self.registry.require(record.plugin_name, capability)
                props = dict(record.dispatch_properties or req.properties)
            else:
                descriptor = await self._descriptor(req.account_id, req.payment_method_id)
                adapter = self.registry.require(descriptor.plugin_name, capability)
                props = self._merged_props(descriptor, req.properties)
            query = adapter.get_refund_info if capability == Capability.GET_REFUND_INFO else adapter.get_payment_info
            envelopes = await self._with_retry(
                lambda: query(req.account_id, req.payment_id, props, ctx),
                plugin_name=adapter.plugin_name,
            )

            match = self._match(req, envelopes)
            if match is None or self._result_problem(req, match) is not None:
                reason = "gateway has no trustworthy record of the operation"
                logger.warning("payment_operation_unreconciled", plugin_name=adapter.plugin_name, reason=reason)
                raise UndeterminedOperationError(req.operation_id, attempts=record.attempts, reason=reason)

            envelope = self._normalize(req, match)
            try:
                if envelope.status == OperationStatus.FAILED:
                    await self.ledger.fail(
                        req.operation_id,
                        {
                            "error_type": "BusinessDecline",
                            "message": envelope.gateway_error or "Gateway declined the operation",
                            "plugin_name": adapter.plugin_name,
                            "gateway_error_code": envelope.gateway_error_code,
                        },
                        result=envelope,
                    )
                else:
                    await self.ledger.complete(req.operation_id, envelope)
            except OperationAlreadyResolvedError:
                # Settled meanwhile; report the stored outcome
                return await self.reconcile(operation_id, ctx)
            logger.info("payment_operation_reconciled", plugin_name=adapter.plugin_name, status=envelope.status.value)
            return envelope

    @staticmethod
    def _match(req: OperationRequest, envelopes: list[ResultEnvelope]) -> Optional[ResultEnvelope]:
        same_kind = [e for e in envelopes if e.kind is None or e.kind == req.kind]
        tagged = [e for e in same_kind if e.operation_id is not None]
        if tagged:
            # Adapter reports operation ids: only an exact match counts
            candidates = [e for e in tagged if e.operation_id == req.operation_id]
        else:
            candidates = same_kind
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.created_at)

    async def reconcile_in_flight(
        self,
        ctx: CallContext,
        *,
        older_than: Optional[datetime] = None,
        limit: int = 100,
    ) -> ReconciliationReport:
        report = ReconciliationReport()
        for record in await self.ledger.list_in_flight(older_than=older_than, limit=limit):
            report.examined += 1
            try:
                envelope = await self.reconcile(record.operation_id, ctx)
            except UndeterminedOperationError:
                report.still_in_flight.append(record.operation_id)
            except BusinessException as exc:
                report.errors[record.operation_id] = exc.message
            else:
                if envelope.status == OperationStatus.FAILED:
                    report.failed.append(record.operation_id)
                else:
                    report.completed.append(record.operation_id)
        logger.info(
            "payment_reconciliation_finished",
            examined=report.examined,
            completed=len(report.completed),
            failed=len(report.failed),
            still_in_flight=len(report.still_in_flight),
            errors=len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Queries and searches (no ledger)
    # ------------------------------------------------------------------
    async def get_payment_info(
        self,
        account_id: str,
        payment_id: str,
        ctx: CallContext,
        *,
        payment_method_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> list[ResultEnvelope]:
        adapter, props = await self._resolve(
            Capability.GET_PAYMENT_INFO,
            account_id=account_id,
            payment_method_id=payment_method_id,
            plugin_name=plugin_name,
            properties=properties,
        )
        return await self._with_retry(
            lambda: adapter.get_payment_info(account_id, payment_id, props, ctx),
            plugin_name=adapter.plugin_name,
        )

    async def get_refund_info(
        self,
        account_id: str,
        payment_id: str,
        ctx: CallContext,
        *,
        payment_method_id: Optional[str] = None,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> list[ResultEnvelope]:
        adapter, props = await self._resolve(
            Capability.GET_REFUND_INFO,
            account_id=account_id,
            payment_method_id=payment_method_id,
            plugin_name=plugin_name,
            properties=properties,
        )
        return await self._with_retry(
            lambda: adapter.get_refund_info(account_id, payment_id, props, ctx),
            plugin_name=adapter.plugin_name,
        )

    def _cursor(
        self,
        adapter: PaymentGateway,
        method: str,
        props: dict[str, str],
        ctx: CallContext,
    ) -> PaginationCursor:
        search = getattr(adapter, method)

        async def fetch(search_key: str, offset: int, limit: int) -> Page:
            return await self._with_retry(
                lambda: search(search_key, offset, limit, props, ctx),
                plugin_name=adapter.plugin_name,
            )

        return PaginationCursor(fetch, max_page_size=self.max_page_size)

    async def _search_cursor(
        self,
        capability: Capability,
        ctx: CallContext,
        plugin_name: Optional[str],
        properties: Optional[Mapping[str, str]],
    ) -> PaginationCursor:
        adapter, props = await self._resolve(capability, plugin_name=plugin_name, properties=properties)
        return self._cursor(adapter, capability.value, props, ctx)

    async def search_payments(
        self,
        search_key: str,
        ctx: CallContext,
        *,
        offset: int = 0,
        limit: int = 10,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> Page[ResultEnvelope]:
        cursor = await self._search_cursor(Capability.SEARCH_PAYMENTS, ctx, plugin_name, properties)
        return await cursor.page(search_key, offset, limit)

    async def search_refunds(
        self,
        search_key: str,
        ctx: CallContext,
        *,
        offset: int = 0,
        limit: int = 10,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> Page[ResultEnvelope]:
        cursor = await self._search_cursor(Capability.SEARCH_REFUNDS, ctx, plugin_name, properties)
        return await cursor.page(search_key, offset, limit)

    async def search_payment_methods(
        self,
        search_key: str,
        ctx: CallContext,
        *,
        offset: int = 0,
        limit: int = 10,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> Page[PaymentMethodInfo]:
        cursor = await self._search_cursor(Capability.SEARCH_PAYMENT_METHODS, ctx, plugin_name, properties)
        return await cursor.page(search_key, offset, limit)

    async def iter_payments(
        self,
        search_key: str,
        ctx: CallContext,
        *,
        page_size: int = MAX_PAGE_SIZE,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> AsyncIterator[ResultEnvelope]:
        """Stream every matching payment, fetching one page at a time."""
        cursor = await self._search_cursor(Capability.SEARCH_PAYMENTS, ctx, plugin_name, properties)
        async for item in cursor.iterate(search_key, limit=page_size):
            yield item

    async def iter_refunds(
        self,
        search_key: str,
        ctx: CallContext,
        *,
        page_size: int = MAX_PAGE_SIZE,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> AsyncIterator[ResultEnvelope]:
        cursor = await self._search_cursor(Capability.SEARCH_REFUNDS, ctx, plugin_name, properties)
        async for item in cursor.iterate(search_key, limit=page_size):
            yield item

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------
    async def add_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        detail: PaymentMethodDetail,
        ctx: CallContext,
        *,
        plugin_name: Optional[str] = None,
        set_default: bool = False,
        properties: Optional[Mapping[str, str]] = None,
    ) -> PaymentMethodDescriptor:
        if not account_id or not payment_method_id:
            raise PaymentValidationError("account_id and payment_method_id are required", field="payment_method_id")
        if await self.payment_methods.get(account_id, payment_method_id) is not None:
            raise PaymentValidationError(
                f"payment method {payment_method_id} already exists", field="payment_method_id"
            )
        adapter = self.registry.require(plugin_name, Capability.ADD_PAYMENT_METHOD)
        props = dict(properties or {})
        stored = await self._with_retry(
            lambda: adapter.add_payment_method(account_id, payment_method_id, detail, set_default, props, ctx),
            plugin_name=adapter.plugin_name,
        )
        descriptor = PaymentMethodDescriptor(
            account_id=account_id,
            payment_method_id=payment_method_id,
            plugin_name=adapter.plugin_name,
            is_default=set_default or stored.is_default,
            external_payment_method_id=stored.external_payment_method_id,
            gateway_props=dict(stored.properties),
        )
        descriptor = await self.payment_methods.save(descriptor)
        logger.info(
            "payment_method_added",
            account_id=account_id,
            payment_method_id=payment_method_id,
            plugin_name=adapter.plugin_name,
            is_default=descriptor.is_default,
        )
        return descriptor

    async def delete_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        ctx: CallContext,
        *,
        properties: Optional[Mapping[str, str]] = None,
    ) -> None:
        descriptor = await self._descriptor(account_id, payment_method_id)
        adapter = self.registry.require(descriptor.plugin_name, Capability.DELETE_PAYMENT_METHOD)
        props = self._merged_props(descriptor, properties)
        await self._with_retry(
            lambda: adapter.delete_payment_method(account_id, payment_method_id, props, ctx),
            plugin_name=adapter.plugin_name,
        )
        await self.payment_methods.delete(account_id, payment_method_id)
        logger.info("payment_method_deleted", account_id=account_id, payment_method_id=payment_method_id)

    async def get_payment_method_detail(
        self,
        account_id: str,
        payment_method_id: str,
        ctx: CallContext,
        *,
        properties: Optional[Mapping[str, str]] = None,
    ) -> PaymentMethodDetail:
        descriptor = await self._descriptor(account_id, payment_method_id)
        adapter = self.registry.require(descriptor.plugin_name, Capability.GET_PAYMENT_METHOD_DETAIL)
        props = self._merged_props(descriptor, properties)
        return await self._with_retry(
            lambda: adapter.get_payment_method_detail(account_id, payment_method_id, props, ctx),
            plugin_name=adapter.plugin_name,
        )

    async def set_default_payment_method(
        self,
        account_id: str,
        payment_method_id: str,
        ctx: CallContext,
        *,
        properties: Optional[Mapping[str, str]] = None,
    ) -> PaymentMethodDescriptor:
        descriptor = await self._descriptor(account_id, payment_method_id)
        adapter = self.registry.require(descriptor.plugin_name, Capability.SET_DEFAULT_PAYMENT_METHOD)
        props = self._merged_props(descriptor, properties)
        await self._with_retry(
            lambda: adapter.set_default_payment_method(account_id, payment_method_id, props, ctx),
            plugin_name=adapter.plugin_name,
        )
        descriptor.is_default = True
        descriptor = await self.payment_methods.save(descriptor)
        logger.info("payment_method_default_set", account_id=account_id, payment_method_id=payment_method_id)
        return descriptor

    async def list_payment_methods(
        self,
        account_id: str,
        ctx: CallContext,
        *,
        refresh_from_gateway: bool = False,
        plugin_name: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> list[PaymentMethodDescriptor]:
        """List an account's payment methods.

        With ``refresh_from_gateway`` the plugin's methods are first mirrored
        from the gateway into the local store, then the adapter is reset with
        the mirrored list.
        """
        if not refresh_from_gateway:
            return await self.payment_methods.list_by_account(account_id)

        adapter = self.registry.require(plugin_name, Capability.GET_PAYMENT_METHODS)
        props = dict(properties or {})
        infos = await self._with_retry(
            lambda: adapter.get_payment_methods(account_id, True, props, ctx),
            plugin_name=adapter.plugin_name,
        )
        known = {d.payment_method_id: d for d in await self.payment_methods.list_by_account(account_id)}
        mirrored = []
        for info in infos:
            previous = known.get(info.payment_method_id)
            mirrored.append(
                PaymentMethodDescriptor(
                    account_id=account_id,
                    payment_method_id=info.payment_method_id,
                    plugin_name=adapter.plugin_name,
                    is_default=info.is_default,
                    external_payment_method_id=info.external_payment_method_id,
                    gateway_props=dict(previous.gateway_props) if previous else {},
                )
            )
        await self.payment_methods.replace_for_plugin(account_id, adapter.plugin_name, mirrored)

        if Capability.RESET_PAYMENT_METHODS in adapter.capabilities:
            synced = [
                PaymentMethodInfo(
                    account_id=d.account_id,
                    payment_method_id=d.payment_method_id,
                    is_default=d.is_default,
                    external_payment_method_id=d.external_payment_method_id,
                )
                for d in mirrored
            ]
            await self._with_retry(
                lambda: adapter.reset_payment_methods(account_id, synced, props, ctx),
                plugin_name=adapter.plugin_name,
            )
        logger.info(
            "payment_methods_refreshed",
            account_id=account_id,
            plugin_name=adapter.plugin_name,
            count=len(mirrored),
        )
        return await self.payment_methods.list_by_account(account_id)

    # ------------------------------------------------------------------
    # Hosted pages and notifications (no ledger)
    # ------------------------------------------------------------------
    async def build_hosted_page_descriptor(
        self,
        account_id: str,
        fields: HostedPageDescriptorFields,
        ctx: CallContext,
        *,
        plugin_name: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> HostedPageFormDescriptor:
        adapter, props = await self._resolve(
            Capability.HOSTED_PAGE,
            account_id=account_id,
            payment_method_id=payment_method_id,
            plugin_name=plugin_name,
            properties=properties,
        )
        descriptor = await self._bounded(
            adapter.build_form_descriptor(account_id, fields, props, ctx),
            plugin_name=adapter.plugin_name,
        )
        logger.info("payment_hosted_page_built", account_id=account_id, plugin_name=adapter.plugin_name)
        return descriptor

    async def process_notification(
        self,
        plugin_name: str,
        payload: bytes,
        ctx: CallContext,
        *,
        headers: Optional[Mapping[str, Any]] = None,
        properties: Optional[Mapping[str, str]] = None,
    ) -> HostedPageNotification:
        adapter = self.registry.require(plugin_name, Capability.NOTIFICATION)
        notification = await self._bounded(
            adapter.process_notification(payload, headers, dict(properties or {}), ctx),
            plugin_name=adapter.plugin_name,
        )
        logger.info(
            "payment_notification_processed",
            plugin_name=adapter.plugin_name,
            notification_id=notification.notification_id,
            status=notification.status.value,
            operation_id=notification.operation_id,
        )
        if notification.operation_id and notification.status in (OperationStatus.SUCCESS, OperationStatus.FAILED):
            await self._resolve_from_notification(notification)
        return notification

    @staticmethod
    def _notification_problem(record: IdempotencyRecord, notification: HostedPageNotification) -> Optional[str]:
        """Return why ``notification`` may not settle ``record``, or None."""
        if not notification.verified:
            return "notification authenticity was not verified"
        if record.plugin_name != notification.plugin_name:
            return f"operation was sent to '{record.plugin_name}', not '{notification.plugin_name}'"
        if notification.kind is None:
            return "notification does not state the operation kind"
        if notification.kind.value != record.kind:
            return f"notification is for '{notification.kind.value}', operation is '{record.kind}'"
        return None

    async def _resolve_from_notification(self, notification: HostedPageNotification) -> None:
        record = await self.ledger.get(notification.operation_id)  # type: ignore[arg-type]
        if record is None or record.state != OperationState.IN_FLIGHT:
            return
        problem = self._notification_problem(record, notification)
        if problem:
            logger.warning("payment_notification_ignored", operation_id=record.operation_id, reason=problem)
            return
        req = OperationRequest.model_validate(record.request)
        envelope = ResultEnvelope(
            status=notification.status,
            kind=notification.kind,
            gateway_reference_id=notification.gateway_reference_id,
            amount_processed=notification.amount,
            currency=notification.currency,
            raw_gateway_payload=notification.raw_payload,
        )
        problem = self._result_problem(req, envelope)
        if problem:
            logger.warning("payment_notification_ignored", operation_id=record.operation_id, reason=problem)
            return
        envelope = self._normalize(req, envelope)
        try:
            if envelope.status == OperationStatus.FAILED:
                await self.ledger.fail(
                    record.operation_id,
                    {
                        "error_type": "BusinessDecline",
                        "message": "Gateway notification reported failure",
                        "plugin_name": notification.plugin_name,
                    },
                    result=envelope,
                )
            else:
                await self.ledger.complete(record.operation_id, envelope)
        except OperationAlreadyResolvedError as exc:
            logger.info("payment_notification_ignored", operation_id=record.operation_id, reason=f"already {exc.state}")
            return
        logger.info(
            "payment_operation_resolved_by_notification",
            operation_id=record.operation_id,
            status=envelope.status.value,
        )

    async def aclose(self) -> None:
        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)
        await self.registry.aclose()
