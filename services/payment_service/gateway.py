"""
VakifBank VPOS 7/24 client.

Two calls reach the bank:
  * MPI enrollment: form-encoded request, XML response. Tells us whether the
    card takes part in 3D Secure and, if so, where to send the browser.
  * VPOS provisioning: a `prmstr` form field carrying a <VposRequest> XML
    document, answered with a <VposResponse>.

The bank answers with several XML shapes for the same outcome. Every
response is normalized here, once, into the tagged results below; callers
never look at raw XML.
"""
import secrets
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

import httpx
import structlog

from shared.config.payment import GatewaySettings, get_gateway_settings
from shared.observability import ordering_gateway_request_duration_seconds

logger = structlog.get_logger(__name__)

SUCCESS_RESULT_CODES = frozenset({"0000", "00"})

# Card brand codes reported back as ACTUALBRAND
BRAND_VISA = "100"
BRAND_MASTERCARD = "200"
BRAND_TROY = "300"

_ECI_TABLE = {
    BRAND_VISA: {"Y": "05", "A": "06"},
    BRAND_MASTERCARD: {"Y": "02", "A": "01"},
    BRAND_TROY: {"Y": "02", "A": "01"},
}

USER_AGENT = "Mozilla/5.0 (compatible; VPOS724/1.0)"


@dataclass(frozen=True)
class CardDetails:
    pan: str
    expiry_month: str
    expiry_year: str
    cvv: str

    @property
    def masked_pan(self) -> str:
        return mask_pan(self.pan)

    @property
    def expiry_yymm(self) -> str:
        return f"{self._year4[2:]}{int(self.expiry_month):02d}"

    @property
    def expiry_yyyymm(self) -> str:
        return f"{self._year4}{int(self.expiry_month):02d}"

    @property
    def _year4(self) -> str:
        year = str(self.expiry_year).strip()
        return f"20{year}" if len(year) == 2 else year


@dataclass(frozen=True)
class Enrolled:
    acs_url: str
    pa_req: str
    term_url: str
    md: str
    brand: Optional[str] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class NotEnrolled:
    brand: Optional[str] = None


@dataclass(frozen=True)
class GatewayFailure:
    code: str
    message: str


EnrollmentResult = Union[Enrolled, NotEnrolled, GatewayFailure]


@dataclass(frozen=True)
class ProvisionResult:
    success: bool
    result_code: str
    result_detail: str = ""
    transaction_id: Optional[str] = None
    rrn: Optional[str] = None
    auth_code: Optional[str] = None
    stan: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def audit(self) -> dict:
        """Fields worth keeping on the order for reconciliation."""
        return {
            "resultCode": self.result_code,
            "resultDetail": self.result_detail,
            "transactionId": self.transaction_id,
            "rrn": self.rrn,
            "authCode": self.auth_code,
            "stan": self.stan,
        }


def mask_pan(pan: str) -> str:
    pan = (pan or "").replace(" ", "")
    if len(pan) < 8:
        return "****"
    return f"{pan[:4]}****{pan[-4:]}"


def derive_eci(brand: Optional[str], status: str) -> Optional[str]:
    """ECI for a successful authentication when the bank did not send one."""
    table = _ECI_TABLE.get(str(brand).strip() if brand is not None else "", _ECI_TABLE[BRAND_VISA])
    return table.get((status or "").upper())


def new_enrollment_request_id() -> str:
    return f"ENR_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def new_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


def _flatten(xml_text: str) -> dict[str, str]:
    """
    Leaf elements keyed by lower-cased tag, first occurrence wins.
    IPaySecure/Message/VERes/Status, VerifyEnrollmentResponse/Status and
    VposResponse/ResultCode all collapse to the same keys.
    """
    root = ET.fromstring(xml_text)
    values: dict[str, str] = {}
    for element in root.iter():
        if len(element) == 0:
            values.setdefault(element.tag.lower(), (element.text or "").strip())
    return values


def parse_enrollment_response(xml_text: str) -> EnrollmentResult:
    try:
        values = _flatten(xml_text)
    except ET.ParseError:
        return GatewayFailure("MALFORMED_RESPONSE", "Enrollment response could not be parsed")

    status = values.get("status", "").upper()
    acs_url = values.get("acsurl")
    term_url = values.get("termurl")
    md = values.get("md")
    pa_req = values.get("pareq", "")
    brand = values.get("actualbrand") or None
    error_code = values.get("messageerrorcode") or "UNKNOWN"
    error_message = values.get("errormessage") or ""

    if status == "Y":
        if not (acs_url and term_url and md):
            return GatewayFailure("INCOMPLETE_ENROLLMENT", "Enrollment response is missing ACS parameters")
        return Enrolled(acs_url=acs_url, pa_req=pa_req, term_url=term_url, md=md, brand=brand)

    # Issuer exception (code 7) still hands out a usable ACS redirect
    if status == "E" and acs_url and term_url and md:
        return Enrolled(acs_url=acs_url, pa_req=pa_req, term_url=term_url, md=md, brand=brand,
                        warning=error_message or None)

    if status == "N":
        return NotEnrolled(brand=brand)

    if status == "E":
        return GatewayFailure(error_code, error_message or "Enrollment check failed")
    return GatewayFailure(error_code, error_message or f"Unknown enrollment status: {status or 'N/A'}")


def parse_provision_response(xml_text: str, fallback_transaction_id: str) -> ProvisionResult:
    try:
        values = _flatten(xml_text)
    except ET.ParseError:
        return ProvisionResult(False, "MALFORMED_RESPONSE", "Provisioning response could not be parsed")

    result_code = values.get("resultcode", "")
    return ProvisionResult(
        success=result_code in SUCCESS_RESULT_CODES,
        result_code=result_code or "UNKNOWN",
        result_detail=values.get("resultdetail", ""),
        transaction_id=values.get("transactionid") or fallback_transaction_id,
        rrn=values.get("rrn") or None,
        auth_code=values.get("authcode") or None,
        stan=values.get("stan") or None,
        raw=values,
    )


def build_vpos_request(fields: dict[str, Optional[str]]) -> str:
    root = ET.Element("VposRequest")
    for name, value in fields.items():
        if value is None or value == "":
            continue
        ET.SubElement(root, name).text = str(value)
    return ET.tostring(root, encoding="unicode")


class VakifGatewayClient:
    """
    Stateless; safe to share. `transport` lets tests swap the bank for an
    httpx.MockTransport.
    """

    def __init__(self, settings: GatewaySettings | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_gateway_settings()
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.timeout,
            verify=self.settings.verify_ssl,
            transport=self.transport,
            headers={"User-Agent": USER_AGENT},
        )

    async def check_enrollment(self, card: CardDetails, amount: Decimal, verify_enrollment_request_id: str,
                               success_url: str, failure_url: str, installment_count: int = 0) -> EnrollmentResult:
        form = {
            "Pan": card.pan,
            "ExpiryDate": card.expiry_yymm,
            "PurchaseAmount": format_amount(amount),
            "Currency": self.settings.currency_code,
            "VerifyEnrollmentRequestId": verify_enrollment_request_id,
            "MerchantId": self.settings.merchant_id,
            "MerchantPassword": self.settings.merchant_password,
            "SuccessUrl": success_url,
            "FailureUrl": failure_url,
        }
        # Terminal number is a provisioning field only
        if installment_count > 0:
            form["InstallmentCount"] = str(installment_count)

        log = logger.bind(verify_enrollment_request_id=verify_enrollment_request_id, card=card.masked_pan)
        log.info("enrollment_request", amount=format_amount(amount), installments=installment_count)

        try:
            with ordering_gateway_request_duration_seconds.labels(operation="enrollment").time():
                async with self._client() as client:
                    resp = await client.post(self.settings.mpi_enrollment_url, data=form)
        except httpx.HTTPError as exc:
            log.error("enrollment_transport_error", error=str(exc))
            return GatewayFailure("TRANSPORT_ERROR", "Bank could not be reached")

        # The MPI reports most errors inside a 200 body; 5xx means no usable answer
        if resp.status_code >= 500:
            log.error("enrollment_http_error", status_code=resp.status_code)
            return GatewayFailure(f"HTTP_{resp.status_code}", "Bank returned an error")

        result = parse_enrollment_response(resp.text)
        log.info("enrollment_response", result=type(result).__name__,
                 code=getattr(result, "code", None), brand=getattr(result, "brand", None))
        return result

    async def _provision(self, operation: str, fields: dict[str, Optional[str]], transaction_id: str) -> ProvisionResult:
        body = build_vpos_request(fields)
        log = logger.bind(transaction_id=transaction_id, operation=operation)
        log.info("provision_request", amount=fields.get("CurrencyAmount"))

        try:
            with ordering_gateway_request_duration_seconds.labels(operation=operation).time():
                async with self._client() as client:
                    resp = await client.post(self.settings.vpos_url, data={"prmstr": body})
                    resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("provision_transport_error", error=str(exc))
            return ProvisionResult(False, "TRANSPORT_ERROR", "Bank could not be reached",
                                   transaction_id=transaction_id)

        result = parse_provision_response(resp.text, transaction_id)
        log.info("provision_response", success=result.success, result_code=result.result_code)
        return result

    def _base_fields(self, amount: Decimal, transaction_id: str) -> dict[str, Optional[str]]:
        return {
            "MerchantId": self.settings.merchant_id,
            "Password": self.settings.merchant_password,
            "TerminalNo": self.settings.terminal_no,
            "TransactionType": "Sale",
            "TransactionId": transaction_id,
            "CurrencyAmount": format_amount(amount),
            "CurrencyCode": self.settings.currency_code,
        }

    async def provision_non_secure(self, card: CardDetails, amount: Decimal, transaction_id: str,
                                   client_ip: str, installment_count: int = 0) -> ProvisionResult:
        fields = self._base_fields(amount, transaction_id)
        fields.update({
            "Pan": card.pan,
            "Expiry": card.expiry_yyyymm,
            "Cvv": card.cvv,
            "TransactionDeviceSource": "0",  # e-commerce
            "ClientIp": client_ip,
            "NumberOfInstallments": f"{installment_count:02d}" if installment_count > 0 else None,
        })
        return await self._provision("provision_non_secure", fields, transaction_id)

    async def provision_3d_secure(self, amount: Decimal, transaction_id: str, client_ip: str, eci: str,
                                  verify_enrollment_request_id: str, cavv: Optional[str] = None,
                                  installment_count: int = 0) -> ProvisionResult:
        fields = self._base_fields(amount, transaction_id)
        fields.update({
            "ECI": eci,
            "CAVV": cavv.strip() if cavv else None,
            "MpiTransactionId": verify_enrollment_request_id,
            "TransactionDeviceSource": "0",
            "ClientIp": client_ip,
            "NumberOfInstallments": f"{installment_count:02d}" if installment_count > 0 else None,
        })
        return await self._provision("provision_3d_secure", fields, transaction_id)
