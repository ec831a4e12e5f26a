import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from requests import RequestException

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://sandboxpgapi.eps.com.bd/v1"
COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# InitializeEPS body keys, in the order the gateway documents them.
INITIALIZE_FIELDS = (
    "CustomerOrderId",
    "merchantTransactionId",
    "transactionTypeId",
    "totalAmount",
    "successUrl",
    "failUrl",
    "cancelUrl",
    "customerName",
    "customerEmail",
    "customerAddress",
    "customerCity",
    "customerState",
    "customerPostcode",
    "customerCountry",
    "customerPhone",
    "productName",
)


@dataclass(frozen=True)
class EpsConfig:
    base_url: str
    merchant_id: str
    store_id: str
    username: str
    password: str
    hash_key: str
    timeout: float = 30

    REQUIRED = ("MERCHANT_ID", "STORE_ID", "USERNAME", "PASSWORD", "HASH_KEY")

    @classmethod
    def from_settings(cls, conf=None) -> "EpsConfig":
        """Build the config from ``settings.EPS`` (or an explicit dict).

        Raises :class:`ImproperlyConfigured` listing every missing credential.
        """
        conf = getattr(settings, "EPS", None) if conf is None else conf
        conf = conf or {}
        missing = [k for k in cls.REQUIRED if not conf.get(k)]
        if missing:
            logger.error("EPS configuration incomplete, missing: %s", ", ".join(missing))
            raise ImproperlyConfigured(f"settings.EPS is missing: {', '.join(missing)}")
        return cls(
            base_url=(conf.get("BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
            merchant_id=str(conf["MERCHANT_ID"]),
            store_id=str(conf["STORE_ID"]),
            username=str(conf["USERNAME"]),
            password=str(conf["PASSWORD"]),
            hash_key=str(conf["HASH_KEY"]),
            timeout=float(conf.get("TIMEOUT") or 30),
        )


def generate_hash(data: str, key: str) -> str:
    """x-hash header value: base64(HMAC-SHA512(data, key))."""
    digest = hmac.new(key.encode("utf-8"), str(data).encode("utf-8"), hashlib.sha512).digest()
    return base64.b64encode(digest).decode("utf-8")


def _as_str(value) -> str:
    return "" if value is None else str(value)


def _decode(resp, error: str) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        logger.error("EPS returned a non-JSON body (HTTP %s): %s", resp.status_code, resp.text[:500])
        return {"error": error, "message": f"Invalid JSON response: {e}"}
    if not 200 <= resp.status_code < 300:
        hint = {
            400: "Bad request: check merchant/store ids and payload.",
            401: "Check EPS credentials and x-hash key.",
        }.get(resp.status_code, f"Gateway error {resp.status_code}.")
        logger.error("EPS returned HTTP %s: %r", resp.status_code, data)
        return {"error": error, "message": hint, "status_code": resp.status_code, "details": data}
    if not isinstance(data, dict):
        logger.error("EPS returned an unexpected body (HTTP %s): %r", resp.status_code, data)
        return {"error": error, "message": "Unexpected response shape"}
    return data


class EpsClient:
    """Signed calls to the EPS REST API.

    Every call fails closed: transport errors and undecodable bodies come back
    as ``{"error": ..., "message": ...}`` instead of raising.
    """

    def __init__(self, config: EpsConfig):
        self.config = config

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}/{path.lstrip('/')}"

    def sign(self, data) -> str:
        return generate_hash(_as_str(data), self.config.hash_key)

    def get_token(self) -> dict:
        body = {"userName": self.config.username, "password": self.config.password}
        headers = {**COMMON_HEADERS, "x-hash": self.sign(self.config.username)}
        try:
            resp = requests.post(self._url("Auth/GetToken"), json=body, headers=headers, timeout=self.config.timeout)
        except RequestException as e:
            logger.exception("EPS GetToken failed")
            return {"error": "token_request_failed", "message": str(e)}
        return _decode(resp, "token_request_failed")

    def _bearer_headers(self, signed_value):
        """Fetch a token and build auth headers; returns (headers, error_dict)."""
        token_response = self.get_token()
        token = token_response.get("token")
        if not token:
            logger.error("EPS token generation failed: %s", token_response)
            return None, {
                "error": "token_generation_failed",
                "message": "Token generation failed",
                "details": token_response,
            }
        headers = {
            **COMMON_HEADERS,
            "Authorization": f"Bearer {token}",
            "x-hash": self.sign(signed_value),
        }
        return headers, None

    def build_initialize_body(self, data: dict) -> dict:
        # The gateway compares these as strings; a JSON number is rejected.
        body = {
            "merchantId": _as_str(self.config.merchant_id),
            "storeId": _as_str(self.config.store_id),
        }
        for key in INITIALIZE_FIELDS:
            body[key] = _as_str(data.get(key))
        if not body["transactionTypeId"]:
            body["transactionTypeId"] = "1"
        return body

    def initialize_payment(self, data: dict) -> dict:
        headers, error = self._bearer_headers(data.get("merchantTransactionId"))
        if error:
            return error
        body = self.build_initialize_body(data)
        try:
            resp = requests.post(
                self._url("EPSEngine/InitializeEPS"), json=body, headers=headers, timeout=self.config.timeout
            )
        except RequestException as e:
            logger.exception("EPS InitializeEPS failed for merchantTransactionId=%s", body["merchantTransactionId"])
            return {"error": "initialize_request_failed", "message": str(e)}
        return _decode(resp, "initialize_request_failed")

    def verify_transaction(self, merchant_transaction_id) -> dict:
        txn_id = _as_str(merchant_transaction_id)
        headers, error = self._bearer_headers(txn_id)
        if error:
            return error
        try:
            resp = requests.get(
                self._url("EPSEngine/CheckMerchantTransactionStatus"),
                params={"merchantTransactionId": txn_id},
                headers=headers,
                timeout=self.config.timeout,
            )
        except RequestException as e:
            logger.exception("EPS CheckMerchantTransactionStatus failed for merchantTransactionId=%s", txn_id)
            return {"error": "verify_request_failed", "message": str(e)}
        return _decode(resp, "verify_request_failed")


def get_client() -> EpsClient:
    return EpsClient(EpsConfig.from_settings())
