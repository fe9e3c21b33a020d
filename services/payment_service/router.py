import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification_service.dependencies import get_dispatcher
from services.notification_service.dispatcher import NotificationDispatcher
from shared.config.database import get_db
from shared.security import PAYMENT_RATE_LIMIT, get_optional_customer, limiter, verify_internal_api_key

from .dependencies import callback_base_url, get_payment_service, resolve_client_ip
from .schemas import (
    ExpireResponse,
    OfflinePaymentRequest,
    OfflinePaymentResponse,
    PaymentInitializeRequest,
    PaymentInitializeResponse,
    PaymentStatusResponse,
)
from .service import PaymentService, failure_redirect

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Payment"])
public_router = APIRouter()  # For any public endpoints (e.g. health check)

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "payment", "status": "running"}


@router.post("/initialize", response_model=PaymentInitializeResponse, response_model_exclude_none=True)
@limiter.limit(PAYMENT_RATE_LIMIT)
async def initialize_payment(
    request: Request,                          # REQUIRED: slowapi needs this to check IP/Headers
    payload: PaymentInitializeRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    customer_id: int | None = Depends(get_optional_customer),
    service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await service.initialize(
        db,
        payload,
        client_ip=resolve_client_ip(request, payload.client_ip),
        callback_base_url=callback_base_url(request),
        customer_id=customer_id,
    )
    background_tasks.add_task(dispatcher.drain)
    return result


# The bank may come back with either verb; fields arrive in the query, the form, or both
@router.api_route("/callback/3d-secure", methods=["GET", "POST"], include_in_schema=False)
async def three_d_secure_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    params = dict(request.query_params)
    if request.method == "POST":
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    try:
        outcome = await service.handle_callback(db, params, client_ip=resolve_client_ip(request))
    except Exception:
        # The browser is mid-redirect from the bank: it always gets a page
        logger.exception("callback_failed", verify_enrollment_request_id=params.get("VerifyEnrollmentRequestId"))
        return RedirectResponse(failure_redirect("invalid_request"), status_code=302)

    background_tasks.add_task(dispatcher.drain)
    return RedirectResponse(outcome.redirect_url, status_code=302)


@router.get("/status/{transaction_id}", response_model=PaymentStatusResponse)
async def payment_status(transaction_id: str, db: AsyncSession = Depends(get_db)):
    return await PaymentService.get_status(db, transaction_id)


@router.post("/offline", response_model=OfflinePaymentResponse)
async def offline_payment(
    payload: OfflinePaymentRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    customer_id: int | None = Depends(get_optional_customer),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = await PaymentService.offline_payment(db, payload.order_id, payload.method, customer_id)
    background_tasks.add_task(dispatcher.drain)
    return result


# Protected: Only the scheduler with the API key can expire abandoned sessions
@router.post("/maintenance/expire", response_model=ExpireResponse,
             dependencies=[Depends(verify_internal_api_key)])
async def expire_abandoned_payments(db: AsyncSession = Depends(get_db)):
    return await PaymentService.expire_abandoned(db)
