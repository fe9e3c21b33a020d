import os
import tempfile
from decimal import Decimal
from urllib.parse import parse_qs, parse_qsl, urlparse
import xml.etree.ElementTree as ET

# Configure the process before any service module reads its environment
_DB_DIR = tempfile.mkdtemp(prefix="ordering-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'ordering.db')}"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["TRACING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYMENT_SUCCESS_URL"] = "https://shop.test/payment/success"
os.environ["PAYMENT_FAILURE_URL"] = "https://shop.test/payment/failure"
os.environ.pop("EMAIL_HOST", None)
os.environ.pop("PAYMENT_CALLBACK_BASE_URL", None)

import httpx
import pytest
from sqlalchemy import select, update

from main import build_app
from services.catalog_service.models import Product, ProductVariant, Restaurant
from services.coupon_service.models import Coupon, CouponUsage
from services.notification_service.dispatcher import NotificationDispatcher
from services.notification_service.models import OutboxEvent
from services.order_service.models import Order
from services.payment_service.gateway import VakifGatewayClient
from shared.config.database import AsyncSessionLocal, Base, engine
from shared.config.payment import GatewaySettings

INTERNAL_HEADERS = {"X-Internal-API-Key": "test-internal-key"}

TEST_SETTINGS = GatewaySettings(
    merchant_id="000100000013506",
    merchant_password="merchant-secret",
    terminal_no="VP000579",
    mpi_enrollment_url="https://bank.test/MPIAPI/MPI_Enrollment.aspx",
    vpos_url="https://bank.test/VposService/v3/Vposreq.aspx",
)

CARD = {"cardNumber": "4938 4100 0000 0005", "expiryMonth": "12", "expiryYear": "2030", "cvv": "123"}


class FakeBank:
    """Plays both the MPI and the VPOS endpoints behind httpx.MockTransport."""

    def __init__(self):
        self.enrollment_status = "Y"
        self.brand = "100"
        self.enrollment_error = None
        self.result_code = "0000"
        self.fail_transport = False
        self.enrollments: list[dict] = []
        self.provisions: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_transport:
            raise httpx.ConnectTimeout("bank timed out", request=request)

        form = dict(parse_qsl(request.content.decode()))
        if request.url.path.endswith("MPI_Enrollment.aspx"):
            self.enrollments.append(form)
            return httpx.Response(200, text=self._enrollment_xml(form))

        root = ET.fromstring(form["prmstr"])
        fields = {child.tag: child.text for child in root}
        self.provisions.append(fields)
        return httpx.Response(200, text=(
            "<VposResponse>"
            f"<ResultCode>{self.result_code}</ResultCode>"
            f"<ResultDetail>{'ISLEM BASARILI' if self.result_code == '0000' else 'RED'}</ResultDetail>"
            f"<TransactionId>{fields['TransactionId']}</TransactionId>"
            "<Rrn>123456789012</Rrn><AuthCode>A1B2C3</AuthCode><Stan>000321</Stan>"
            "</VposResponse>"
        ))

    def _enrollment_xml(self, form: dict) -> str:
        acs = ""
        if self.enrollment_status == "Y" or (self.enrollment_status == "E" and self.enrollment_error == "7"):
            acs = (
                "<ACSUrl>https://acs.bank.test/challenge</ACSUrl>"
                "<PaReq>cGFyZXE=</PaReq>"
                "<TermUrl>https://bank.test/MPIAPI/TermUrl.aspx</TermUrl>"
                "<MD>bWQtdmFsdWU=</MD>"
            )
        error = ""
        if self.enrollment_error:
            error = f"<MessageErrorCode>{self.enrollment_error}</MessageErrorCode><ErrorMessage>Issuer error</ErrorMessage>"
        return (
            "<IPaySecure><Message ID=\"1\"><VERes>"
            f"<Status>{self.enrollment_status}</Status>{acs}"
            f"<ACTUALBRAND>{self.brand}</ACTUALBRAND>"
            "</VERes></Message>"
            f"<VerifyEnrollmentRequestId>{form.get('VerifyEnrollmentRequestId')}</VerifyEnrollmentRequestId>"
            f"{error}</IPaySecure>"
        )

    def callback_token(self, index: int = -1) -> str:
        success_url = self.enrollments[index]["SuccessUrl"]
        return parse_qs(urlparse(success_url).query)["cbt"][0]


class RecordingBroadcaster:
    def __init__(self):
        self.sent: list[tuple[int, dict]] = []
        self.offline: set[int] = set()

    async def notify_restaurant(self, restaurant_id, payload):
        if restaurant_id in self.offline:
            return 0
        self.sent.append((restaurant_id, payload))
        return 1

    def events(self, name):
        return [(rid, p) for rid, p in self.sent if p["event"] == name]


class RecordingEmailSender:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send(self, subject, html, text):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((subject, html, text))
        return True


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Pooled connections belong to this test's event loop
    await engine.dispose()


@pytest.fixture
def bank():
    return FakeBank()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def mailer():
    return RecordingEmailSender()


@pytest.fixture
def gateway(bank):
    return VakifGatewayClient(settings=TEST_SETTINGS, transport=httpx.MockTransport(bank.handler))


@pytest.fixture
def app(gateway, broadcaster, mailer):
    return build_app(gateway=gateway, broadcaster=broadcaster, email_sender=mailer)


@pytest.fixture
def dispatcher(app) -> NotificationDispatcher:
    return app.state.dispatcher


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
async def catalog():
    """Two restaurants, three products, one variant."""
    async with AsyncSessionLocal() as db:
        burger = Restaurant(name="Burger House", min_order=Decimal("0"), auto_print=True, is_active=True)
        pizza = Restaurant(name="Pizza Place", min_order=Decimal("0"), auto_print=True, is_active=True)
        db.add_all([burger, pizza])
        await db.flush()

        cheeseburger = Product(restaurant_id=burger.id, name="Cheeseburger", price=Decimal("60.00"), is_active=True)
        fries = Product(restaurant_id=burger.id, name="Fries", price=Decimal("20.00"), is_active=True)
        margherita = Product(restaurant_id=pizza.id, name="Margherita", price=Decimal("40.00"), is_active=True)
        retired = Product(restaurant_id=pizza.id, name="Retired Pizza", price=Decimal("10.00"), is_active=False)
        db.add_all([cheeseburger, fries, margherita, retired])
        await db.flush()

        large = ProductVariant(product_id=margherita.id, name="Large", price=Decimal("55.00"), is_active=True)
        db.add(large)
        await db.commit()

        return {
            "burger": burger.id,
            "pizza": pizza.id,
            "cheeseburger": cheeseburger.id,
            "fries": fries.id,
            "margherita": margherita.id,
            "retired": retired.id,
            "large": large.id,
        }


async def add_coupon(**fields) -> Coupon:
    defaults = dict(
        description=None,
        minimum_amount=Decimal("0"),
        max_discount=None,
        usage_limit=None,
        used_count=0,
        valid_from=None,
        valid_until=None,
        is_active=True,
    )
    defaults.update(fields)
    async with AsyncSessionLocal() as db:
        coupon = Coupon(**defaults)
        db.add(coupon)
        await db.commit()
        return coupon


def order_payload(*lines, coupon=None, customer_id=7, **extra):
    payload = {
        "customerId": customer_id,
        "customerName": "Ayse Yilmaz",
        "customerPhone": "+905551112233",
        "customerAddress": "Bagdat Cd. 12, Kadikoy",
        "notes": "Ring twice",
        "items": [
            {"productId": product_id, "quantity": quantity, **({"variantId": variant} if variant else {})}
            for product_id, quantity, variant in (
                line if len(line) == 3 else (*line, None) for line in lines
            )
        ],
    }
    if coupon:
        payload["couponCode"] = coupon
    payload.update(extra)
    return payload


async def place_order(client, *lines, coupon=None, **extra) -> dict:
    resp = await client.post("/orders/", json=order_payload(*lines, coupon=coupon, **extra))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def fetch_group(group_id: str) -> list[Order]:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Order).where(Order.group_id == group_id).order_by(Order.id))
        return list(result.scalars().all())


async def fetch_order(order_id: int) -> Order:
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Order).where(Order.id == order_id))
        return result.scalars().one()


async def fetch_all(model):
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


async def set_order_fields(order_id: int, **values):
    async with AsyncSessionLocal() as db:
        await db.execute(update(Order).where(Order.id == order_id).values(**values))
        await db.commit()

