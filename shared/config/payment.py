"""
Bank virtual-POS configuration (VakifBank VPOS 7/24).

Two endpoints are involved:
  * the MPI enrollment endpoint (3D Secure directory lookup, XML response)
  * the VPOS provisioning endpoint (form field `prmstr` carrying an XML request)
"""
import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

PAYMENT_ENVIRONMENT = os.getenv("PAYMENT_ENVIRONMENT", "test")

_URLS = {
    "test": {
        "mpi_enrollment_url": os.getenv(
            "VAKIF_TEST_MPI_URL",
            "https://3dsecuretest.vakifbank.com.tr/MPIAPI/MPI_Enrollment.aspx",
        ),
        "vpos_url": os.getenv(
            "VAKIF_TEST_VPOS_URL",
            "https://onlineodemetest.vakifbank.com.tr:4443/VposService/v3/Vposreq.aspx",
        ),
    },
    "production": {
        "mpi_enrollment_url": os.getenv(
            "VAKIF_PROD_MPI_URL",
            "https://3dsecure.vakifbank.com.tr/MPIAPI/MPI_Enrollment.aspx",
        ),
        "vpos_url": os.getenv(
            "VAKIF_PROD_VPOS_URL",
            "https://onlineodeme.vakifbank.com.tr:4443/VposService/v3/Vposreq.aspx",
        ),
    },
}


@dataclass(frozen=True)
class GatewaySettings:
    merchant_id: str
    merchant_password: str
    terminal_no: str
    mpi_enrollment_url: str
    vpos_url: str
    currency_code: str = "949"  # TRY
    timeout: float = 30.0
    verify_ssl: bool = True


def get_gateway_settings() -> GatewaySettings:
    urls = _URLS["production"] if PAYMENT_ENVIRONMENT == "production" else _URLS["test"]
    return GatewaySettings(
        merchant_id=os.getenv("VAKIF_MERCHANT_ID", "000000000001111"),
        merchant_password=os.getenv("VAKIF_MERCHANT_PASSWORD", "test_password"),
        terminal_no=os.getenv("VAKIF_TERMINAL_NO", "00000001"),
        mpi_enrollment_url=urls["mpi_enrollment_url"],
        vpos_url=urls["vpos_url"],
        currency_code=os.getenv("PAYMENT_CURRENCY_CODE", "949"),
        timeout=float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "30")),
        verify_ssl=os.getenv("VAKIF_SKIP_SSL_VERIFY", "false").lower() != "true",
    )


# Browser landing pages after the bank callback
PAYMENT_SUCCESS_URL = os.getenv("PAYMENT_SUCCESS_URL", "http://localhost:5173/payment/success")
PAYMENT_FAILURE_URL = os.getenv("PAYMENT_FAILURE_URL", "http://localhost:5173/payment/failure")

# Public base URL the bank calls back on. Empty -> derived from the incoming request.
PAYMENT_CALLBACK_BASE_URL = os.getenv("PAYMENT_CALLBACK_BASE_URL", "")

PAYMENT_PENDING_TTL_MINUTES = int(os.getenv("PAYMENT_PENDING_TTL_MINUTES", "30"))
