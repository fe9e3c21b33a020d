import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from services.coupon_service.engine import to_money
from services.notification_service.dispatcher import EventType, NotificationDispatcher
from services.order_service.enums import OFFLINE_METHODS, PaymentMethod, PaymentStatus
from services.order_service.models import Order, utcnow
from services.order_service.repository import OrderRepository
from shared.config.payment import (
    PAYMENT_FAILURE_URL,
    PAYMENT_PENDING_TTL_MINUTES,
    PAYMENT_SUCCESS_URL,
)
from shared.errors import GatewayError, NotFoundError, TamperError, ValidationError
from shared.observability import (
    ordering_callback_rejections_total,
    ordering_payment_settlements_total,
)

from .gateway import (
    CardDetails,
    Enrolled,
    GatewayFailure,
    ProvisionResult,
    VakifGatewayClient,
    derive_eci,
    format_amount,
    new_enrollment_request_id,
    new_transaction_id,
)
from .group_sync import OrderGroupSynchronizer
from .repository import PaymentRepository
from .schemas import (
    ExpireResponse,
    OfflinePaymentResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentResult,
    PaymentStatusResponse,
)
from .state import ensure_transition

logger = structlog.get_logger(__name__)

AMOUNT_TOLERANCE = Decimal("0.005")
AUTHENTICATED_STATUSES = frozenset({"Y", "A"})

# Fixed, browser-safe failure reasons. Gateway details stay in the database.
FAILURE_MESSAGES = {
    "missing_parameters": "Payment information is missing",
    "not_found": "Order not found",
    "invalid_request": "Invalid request",
    "amount_mismatch": "Amount mismatch",
    "authentication_failed": "3D Secure authentication failed",
    "eci_missing": "Payment information is incomplete",
    "declined": "Payment was declined",
    "already_processed": "Payment was already processed",
}


@dataclass
class CallbackOutcome:
    success: bool
    redirect_url: str
    reason: Optional[str] = None


def success_redirect(order: Order, transaction_id: Optional[str]) -> str:
    query = {"orderId": order.id, "orderNumber": order.order_number}
    if transaction_id:
        query["transactionId"] = transaction_id
    return f"{PAYMENT_SUCCESS_URL}?{urlencode(query)}"


def failure_redirect(reason: str, order: Optional[Order] = None) -> str:
    query: dict[str, Any] = {"error": FAILURE_MESSAGES.get(reason, FAILURE_MESSAGES["invalid_request"]), "reason": reason}
    if order is not None:
        query["orderId"] = order.id
    return f"{PAYMENT_FAILURE_URL}?{urlencode(query)}"


def build_callback_urls(base_url: str, token: str) -> tuple[str, str]:
    # Both outcomes land on the same handler; Status tells them apart
    url = f"{base_url.rstrip('/')}/payment/callback/3d-secure?{urlencode({'cbt': token})}"
    return url, url


def parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return Decimal(str(value).strip().replace(",", "."))
    except InvalidOperation:
        return None


class PaymentService:
    """
    Drives an order group from Pending to a settled state. The bank call is
    never made inside an open database transaction; every write afterwards
    is a status-guarded update, so a replayed or concurrent callback cannot
    settle twice.
    """

    def __init__(self, gateway: VakifGatewayClient):
        self.gateway = gateway

    # --- settlement -------------------------------------------------------

    @staticmethod
    async def _settle(db: AsyncSession, order: Order, target: PaymentStatus, flow: str,
                      details: dict[str, Any], primary_response: Optional[dict] = None,
                      expected: PaymentStatus = PaymentStatus.PENDING, notify: bool = True) -> bool:
        """
        One transaction: guarded update of the primary order, propagation to
        its siblings, and (only if the primary update won) the outbox event.
        """
        ensure_transition(expected, target)
        try:
            values = dict(details)
            if primary_response is not None:
                values["payment_response"] = primary_response
            won = await PaymentRepository.settle(db, order.id, expected, target, values)
            if won:
                sibling_details = dict(details)
                if primary_response is not None:
                    sibling_details["payment_response"] = {
                        "primaryOrderId": order.id,
                        **{k: v for k, v in primary_response.items() if k != "callbackToken"},
                    }
                await OrderGroupSynchronizer.propagate(db, order.group_id, target, sibling_details, expected)
                if notify and target in (PaymentStatus.PAID, PaymentStatus.AWAITING_PAYMENT):
                    await NotificationDispatcher.enqueue(db, EventType.ORDER_CONFIRMED, order.id, order.group_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if won:
            ordering_payment_settlements_total.labels(status=target.value, flow=flow).inc()
            logger.info("payment_settled", order_id=order.id, group_id=order.group_id,
                        status=target.value, flow=flow)
        else:
            logger.warning("payment_settle_lost", order_id=order.id, expected=expected.value, target=target.value)
        return won

    @staticmethod
    def _paid_details(result: ProvisionResult) -> dict[str, Any]:
        return {
            "payment_transaction_id": result.transaction_id,
            "paid_at": utcnow(),
            "payment_error": None,
        }

    @staticmethod
    def _failed_details(message: str, transaction_id: Optional[str] = None) -> dict[str, Any]:
        details: dict[str, Any] = {"payment_error": message[:1024]}
        if transaction_id:
            details["payment_transaction_id"] = transaction_id
        return details

    # --- initialize -------------------------------------------------------

    @staticmethod
    async def _load_for_payment(db: AsyncSession, order_id: int, customer_id: Optional[int]) -> Order:
        order = await OrderRepository.get_order(db, order_id)
        # Someone else's order looks the same as a missing one
        if not order or (customer_id is not None and order.customer_id != customer_id):
            raise NotFoundError("Order not found", error_code="ORDER_NOT_FOUND")
        return order

    async def initialize(self, db: AsyncSession, data: PaymentInitializeRequest, client_ip: str,
                         callback_base_url: str, customer_id: Optional[int] = None) -> PaymentInitializeResponse:
        order = await self._load_for_payment(db, data.order_id, customer_id)
        ensure_transition(order.payment_status, PaymentStatus.PAID)
        if order.payment_status != PaymentStatus.PENDING.value:
            raise ValidationError("Order is not awaiting an online payment", error_code="PAYMENT_NOT_PENDING")

        # One bank transaction settles the whole checkout
        group = await OrderRepository.get_group(db, order.group_id)
        payable = to_money(sum((o.total_amount for o in group), Decimal("0")))
        if abs(to_money(data.amount) - payable) > AMOUNT_TOLERANCE:
            raise ValidationError(
                f"Amount {format_amount(data.amount)} does not match payable total {payable}",
                error_code="AMOUNT_MISMATCH",
            )

        card = CardDetails(data.card_number, data.expiry_month, data.expiry_year, data.cvv)
        token = secrets.token_hex(16)
        success_url, failure_url = build_callback_urls(callback_base_url, token)
        enrollment_id = new_enrollment_request_id()

        log = logger.bind(order_id=order.id, group_id=order.group_id, verify_enrollment_request_id=enrollment_id)
        log.info("payment_initialize", amount=str(payable), card=card.masked_pan,
                 installments=data.installment_count)

        # Release the connection for the bank round-trip
        await db.commit()
        enrollment = await self.gateway.check_enrollment(
            card, payable, enrollment_id, success_url, failure_url, data.installment_count
        )
        if isinstance(enrollment, GatewayFailure):
            # Nothing was committed; the order stays Pending and can be retried
            log.warning("enrollment_failed", code=enrollment.code)
            raise GatewayError(enrollment.message, error_code=enrollment.code)

        metadata = {
            "callbackToken": token,
            "groupId": order.group_id,
            "amount": str(payable),
            "brand": enrollment.brand,
            "installmentCount": data.installment_count,
            "enrolled": isinstance(enrollment, Enrolled),
            "enrollmentRequestedAt": utcnow().isoformat(),
        }
        if isinstance(enrollment, Enrolled) and enrollment.warning:
            metadata["enrollmentWarning"] = enrollment.warning

        # Persisted before branching: the callback can only be correlated through this row
        try:
            recorded = await PaymentRepository.record_enrollment(db, order.id, enrollment_id, metadata)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        if not recorded:
            raise ValidationError("Order is not awaiting an online payment", error_code="PAYMENT_NOT_PENDING")

        if isinstance(enrollment, Enrolled):
            log.info("payment_requires_3d_secure")
            return PaymentInitializeResponse(
                enrolled=True,
                requires_3d_secure=True,
                acs_url=enrollment.acs_url,
                pa_req=enrollment.pa_req,
                term_url=enrollment.term_url,
                md=enrollment.md,
                verify_enrollment_request_id=enrollment_id,
            )

        return await self._pay_not_enrolled(db, order, card, payable, client_ip, data.installment_count, metadata)

    async def _pay_not_enrolled(self, db: AsyncSession, order: Order, card: CardDetails, amount: Decimal,
                                client_ip: str, installment_count: int, metadata: dict) -> PaymentInitializeResponse:
        transaction_id = new_transaction_id()
        result = await self.gateway.provision_non_secure(card, amount, transaction_id, client_ip, installment_count)
        response = {**metadata, "flow": "non_secure", "provision": result.audit()}

        if result.success:
            won = await self._settle(db, order, PaymentStatus.PAID, "non_secure",
                                     self._paid_details(result), primary_response=response)
            if not won:
                # Another writer settled the group first; report what it stored
                await db.refresh(order)
                logger.warning("non_secure_settle_lost", order_id=order.id, status=order.payment_status,
                               transaction_id=result.transaction_id)
                if order.payment_status != PaymentStatus.PAID.value:
                    raise GatewayError(FAILURE_MESSAGES["already_processed"], error_code="PAYMENT_NOT_PENDING")
                stored = (order.payment_response or {}).get("provision") or {}
                return PaymentInitializeResponse(
                    enrolled=False,
                    payment_result=PaymentResult(
                        transaction_id=order.payment_transaction_id,
                        rrn=stored.get("rrn"),
                        auth_code=stored.get("authCode"),
                    ),
                )
            return PaymentInitializeResponse(
                enrolled=False,
                payment_result=PaymentResult(
                    transaction_id=result.transaction_id, rrn=result.rrn, auth_code=result.auth_code
                ),
            )

        await self._settle(db, order, PaymentStatus.FAILED, "non_secure",
                           self._failed_details(f"Payment declined ({result.result_code})", transaction_id),
                           primary_response=response)
        raise GatewayError(FAILURE_MESSAGES["declined"], error_code=result.result_code)

    # --- 3D Secure callback -----------------------------------------------

    @staticmethod
    def _reject(reason: str, redirect_url: str, **context) -> CallbackOutcome:
        ordering_callback_rejections_total.labels(reason=reason).inc()
        logger.warning("callback_rejected", reason=reason, **context)
        return CallbackOutcome(False, redirect_url, reason)

    @staticmethod
    def _verify_token(order: Order, token: Optional[str]) -> None:
        expected = (order.payment_response or {}).get("callbackToken") or ""
        if not expected or not token or not secrets.compare_digest(str(expected), str(token)):
            raise TamperError("Callback token mismatch")

    @staticmethod
    def _verify_amount(order: Order, reported: Any) -> None:
        expected = parse_amount((order.payment_response or {}).get("amount"))
        amount = parse_amount(reported)
        if expected is None or amount is None or abs(amount - expected) > AMOUNT_TOLERANCE:
            raise TamperError(f"Amount mismatch (bank: {reported}, order: {expected})")

    async def handle_callback(self, db: AsyncSession, params: Mapping[str, Any], client_ip: str) -> CallbackOutcome:
        """
        Bank-invoked, out of band. Always resolves to a redirect target;
        the browser never sees gateway details.
        """
        status = str(params.get("Status") or "").strip().upper()
        enrollment_id = str(params.get("VerifyEnrollmentRequestId") or "").strip()
        log = logger.bind(verify_enrollment_request_id=enrollment_id or None, status=status or None)
        log.info("callback_received", md_status=params.get("MdStatus"), has_eci=bool(params.get("Eci")),
                 has_cavv=bool(params.get("Cavv")), purch_amount=params.get("PurchAmount"))

        if not status or not enrollment_id:
            return self._reject("missing_params", failure_redirect("missing_parameters"))

        order = await OrderRepository.get_by_enrollment_id(db, enrollment_id)
        if order is None:
            return self._reject("not_found", failure_redirect("not_found"))

        # A forged callback must not be able to touch a genuine order
        try:
            self._verify_token(order, params.get("cbt"))
        except TamperError:
            return self._reject("token_mismatch", failure_redirect("invalid_request"), order_id=order.id)

        if order.payment_status != PaymentStatus.PENDING.value:
            # Replay of an already settled callback; nothing is written
            if order.payment_status == PaymentStatus.PAID.value:
                ordering_callback_rejections_total.labels(reason="not_pending").inc()
                log.info("callback_replayed", order_id=order.id)
                return CallbackOutcome(True, success_redirect(order, order.payment_transaction_id), "not_pending")
            return self._reject("not_pending", failure_redirect("already_processed", order), order_id=order.id)

        stored = dict(order.payment_response or {})
        audit = {
            "status": status,
            "mdStatus": params.get("MdStatus"),
            "eci": params.get("Eci"),
            "purchAmount": params.get("PurchAmount"),
            "installmentCount": params.get("InstallmentCount"),
            "xid": params.get("Xid"),
            "receivedAt": utcnow().isoformat(),
        }
        response = {**stored, "flow": "three_d_secure", "callback": audit}

        try:
            self._verify_amount(order, params.get("PurchAmount"))
        except TamperError as exc:
            await self._settle(db, order, PaymentStatus.FAILED, "three_d_secure",
                               self._failed_details(str(exc)), primary_response=response)
            return self._reject("amount_mismatch", failure_redirect("amount_mismatch", order), order_id=order.id)

        if status not in AUTHENTICATED_STATUSES:
            await self._settle(db, order, PaymentStatus.FAILED, "three_d_secure",
                               self._failed_details(f"3D Secure authentication failed (Status: {status})"),
                               primary_response=response)
            log.warning("callback_authentication_failed", order_id=order.id)
            return CallbackOutcome(False, failure_redirect("authentication_failed", order), "authentication_failed")

        eci = str(params.get("Eci") or "").strip() or derive_eci(stored.get("brand"), status)
        if not eci:
            await self._settle(db, order, PaymentStatus.FAILED, "three_d_secure",
                               self._failed_details("ECI value missing"), primary_response=response)
            return CallbackOutcome(False, failure_redirect("eci_missing", order), "eci_missing")
        audit["eciUsed"] = eci

        installments = stored.get("installmentCount") or 0
        transaction_id = new_transaction_id()
        # The Pending guard in _settle decides the race, not a held transaction
        await db.commit()
        result = await self.gateway.provision_3d_secure(
            amount=parse_amount(stored.get("amount")),
            transaction_id=transaction_id,
            client_ip=client_ip,
            eci=eci,
            verify_enrollment_request_id=enrollment_id,
            cavv=params.get("Cavv") or None,
            installment_count=int(installments),
        )
        response["provision"] = result.audit()

        if result.success:
            won = await self._settle(db, order, PaymentStatus.PAID, "three_d_secure",
                                     self._paid_details(result), primary_response=response)
            if not won:
                # A concurrent delivery settled first; report whatever it decided
                await db.refresh(order)
                if order.payment_status == PaymentStatus.PAID.value:
                    return CallbackOutcome(True, success_redirect(order, order.payment_transaction_id))
                return self._reject("not_pending", failure_redirect("already_processed", order), order_id=order.id)
            return CallbackOutcome(True, success_redirect(order, result.transaction_id))

        await self._settle(db, order, PaymentStatus.FAILED, "three_d_secure",
                           self._failed_details(f"Payment declined ({result.result_code})", transaction_id),
                           primary_response=response)
        return CallbackOutcome(False, failure_redirect("declined", order), "declined")

    # --- offline ----------------------------------------------------------

    @staticmethod
    async def offline_payment(db: AsyncSession, order_id: int, method: PaymentMethod,
                              customer_id: Optional[int] = None) -> OfflinePaymentResponse:
        if method not in OFFLINE_METHODS:
            raise ValidationError(f"Unsupported offline payment method: {method.value}",
                                  error_code="INVALID_PAYMENT_METHOD")

        order = await PaymentService._load_for_payment(db, order_id, customer_id)
        current = PaymentStatus(order.payment_status)
        ensure_transition(current, PaymentStatus.AWAITING_PAYMENT)

        # Re-selecting a method keeps the ticket already sent to the kitchen
        first_selection = current == PaymentStatus.PENDING
        won = await PaymentService._settle(
            db, order, PaymentStatus.AWAITING_PAYMENT, "offline",
            {"payment_method": method.value, "payment_error": None},
            expected=current, notify=first_selection,
        )
        if not won:
            raise ValidationError("Order payment changed concurrently, retry", error_code="PAYMENT_CONFLICT")

        return OfflinePaymentResponse(
            success=True,
            order_id=order.id,
            payment_method=method.value,
            payment_status=PaymentStatus.AWAITING_PAYMENT.value,
        )

    # --- lookups and maintenance -----------------------------------------

    @staticmethod
    async def get_status(db: AsyncSession, reference: str) -> PaymentStatusResponse:
        order = await OrderRepository.get_by_payment_reference(db, reference)
        if not order:
            raise NotFoundError("Payment not found", error_code="PAYMENT_NOT_FOUND")
        return PaymentStatusResponse(
            order_id=order.id,
            order_number=order.order_number,
            group_id=order.group_id,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            payment_transaction_id=order.payment_transaction_id,
            paid_at=order.paid_at,
            payment_error=order.payment_error,
        )

    @staticmethod
    async def expire_abandoned(db: AsyncSession, now: Optional[datetime] = None,
                               ttl_minutes: int = PAYMENT_PENDING_TTL_MINUTES) -> ExpireResponse:
        """Fail groups whose shopper never came back from the ACS page."""
        now = now or utcnow()
        stale = await PaymentRepository.get_abandoned(db, now - timedelta(minutes=ttl_minutes))
        expired = []
        for order in stale:
            if await PaymentService._settle(db, order, PaymentStatus.FAILED, "expiry",
                                            {"payment_error": "payment session expired"}):
                expired.append(order.id)
        if expired:
            logger.info("payment_sessions_expired", count=len(expired), order_ids=expired)
        return ExpireResponse(expired=len(expired), order_ids=expired)
