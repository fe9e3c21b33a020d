from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification_service.dependencies import get_dispatcher
from services.notification_service.dispatcher import NotificationDispatcher
from shared.config.database import get_db
from shared.errors import AuthError
from shared.security import ORDER_RATE_LIMIT, get_optional_customer, limiter

from .schemas import OrderCreate, OrderCreateResponse, OrderDetailResponse
from .service import OrderService

router = APIRouter(tags=["Orders"])
public_router = APIRouter()  # For any public endpoints (e.g. health check)

@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


@router.post("/", response_model=OrderCreateResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDER_RATE_LIMIT)
async def create_order(
    request: Request,                          # REQUIRED: slowapi needs this to check IP/Headers
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    token_customer_id: int | None = Depends(get_optional_customer),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    # A verified token wins over the body field; guests cannot check out
    customer_id = token_customer_id or payload.customer_id
    if not customer_id:
        raise AuthError("Please sign in to place an order")

    result = await OrderService.create_order(db, payload, customer_id)
    background_tasks.add_task(dispatcher.drain)
    return result


@router.get("/{order_number}", response_model=OrderDetailResponse)
async def get_order(order_number: str, db: AsyncSession = Depends(get_db)):
    return await OrderService.get_order_by_number(db, order_number)
