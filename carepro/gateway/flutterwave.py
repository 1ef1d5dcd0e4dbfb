"""
Flutterwave v3 payment gateway client.
"""
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from carepro.core.exceptions import GatewayError, GatewayTimeoutError
from carepro.core.monitoring import GatewayMetricsContext
from carepro.core.settings import settings
from carepro.gateway.base import ChargeResult, PaymentGateway, PaymentLinkRequest, TransactionVerification

logger = structlog.get_logger(__name__)

# Retry configuration for read-only calls; charges are never retried here
MAX_READ_RETRIES = 3
BASE_DELAY = 0.5
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise GatewayError(f"unparseable amount {value!r}")


class FlutterwaveGateway(PaymentGateway):
    """Hosted checkout, verification and tokenized charges against Flutterwave v3."""

    def __init__(self, secret_key: str = None, base_url: str = None, timeout: float = None,
                 client: httpx.Client = None):
        self.secret_key = secret_key if secret_key is not None else settings.flutterwave_secret_key
        self.base_url = (base_url or settings.flutterwave_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.client = client or httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self._headers(),
        )

    @property
    def name(self) -> str:
        return "flutterwave"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        with GatewayMetricsContext(self.name, operation):
            try:
                return self.client.request(method, path, headers=self._headers(), **kwargs)
            except httpx.TimeoutException:
                logger.warning("Gateway request timed out", operation=operation, path=path)
                raise GatewayTimeoutError(operation=operation)
            except httpx.HTTPError as e:
                logger.warning("Gateway transport error", operation=operation, path=path, error=str(e))
                raise GatewayError(str(e), retryable=True, operation=operation)

    def _read_with_retry(self, path: str, operation: str, **kwargs) -> httpx.Response:
        """GET with exponential backoff on transport errors and 5xx responses."""
        last_error: Optional[GatewayError] = None

        for attempt in range(MAX_READ_RETRIES):
            try:
                response = self._send("GET", path, operation, **kwargs)
            except GatewayError as e:
                last_error = e
            else:
                if response.status_code not in RETRY_STATUS_CODES:
                    return response
                last_error = GatewayError(f"HTTP {response.status_code}", retryable=True, operation=operation)

            if attempt < MAX_READ_RETRIES - 1:
                delay = BASE_DELAY * (2 ** attempt)
                logger.debug("Retrying gateway read", operation=operation, attempt=attempt + 1, delay=delay)
                time.sleep(delay)

        raise last_error

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            raise GatewayError(f"non-JSON response (HTTP {response.status_code})", operation=operation)

    def _parse_verification(self, data: Dict[str, Any]) -> TransactionVerification:
        card = data.get("card") or {}
        return TransactionVerification(
            transaction_id=str(data.get("id")),
            transaction_reference=data.get("tx_ref") or "",
            status=(data.get("status") or "").lower(),
            amount=_to_decimal(data.get("amount", 0)),
            currency=data.get("currency") or "",
            payment_token=card.get("token"),
            card_last_four=card.get("last_4digits"),
            card_brand=card.get("type"),
            card_expiry=card.get("expiry"),
        )

    def initiate_payment(self, request: PaymentLinkRequest) -> str:
        payload = {
            "tx_ref": request.transaction_reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "redirect_url": request.redirect_url,
            "payment_options": "card",
            "customer": {"email": request.email},
            "customizations": {
                "title": request.title,
                "description": request.description,
            },
        }

        response = self._send("POST", "/v3/payments", "initiate_payment", json=payload)
        body = self._json(response, "initiate_payment")

        link = (body.get("data") or {}).get("link")
        if body.get("status") != "success" or not link:
            logger.error(
                "Payment initiation failed",
                transaction_reference=request.transaction_reference,
                http_status=response.status_code,
                message=body.get("message"),
            )
            raise GatewayError(body.get("message") or "no payment link returned", operation="initiate_payment")

        logger.info("Payment link created", transaction_reference=request.transaction_reference)
        return link

    def verify_transaction(self, transaction_id: str) -> TransactionVerification:
        response = self._read_with_retry(f"/v3/transactions/{transaction_id}/verify", "verify_transaction")
        body = self._json(response, "verify_transaction")

        if body.get("status") != "success" or not body.get("data"):
            raise GatewayError(body.get("message") or "verification failed", operation="verify_transaction")

        return self._parse_verification(body["data"])

    def verify_by_reference(self, transaction_reference: str) -> Optional[TransactionVerification]:
        response = self._read_with_retry(
            "/v3/transactions/verify_by_reference",
            "verify_by_reference",
            params={"tx_ref": transaction_reference},
        )
        if response.status_code == 404:
            return None
        body = self._json(response, "verify_by_reference")

        if body.get("status") == "error" and not body.get("data"):
            return None
        if body.get("status") != "success":
            raise GatewayError(body.get("message") or "lookup failed", operation="verify_by_reference")

        return self._parse_verification(body["data"])

    def charge_with_token(self, token: str, amount: Decimal, currency: str, email: str,
                          transaction_reference: str, narration: str = "") -> ChargeResult:
        payload = {
            "token": token,
            "currency": currency,
            "amount": str(amount),
            "email": email,
            "tx_ref": transaction_reference,
            "narration": narration,
        }

        response = self._send("POST", "/v3/tokenized-charges", "charge_with_token", json=payload)
        body = self._json(response, "charge_with_token")
        data = body.get("data") or {}

        if body.get("status") == "success" and (data.get("status") or "").lower() == "successful":
            logger.info(
                "Tokenized charge succeeded",
                transaction_reference=transaction_reference,
                transaction_id=data.get("id"),
            )
            return ChargeResult(
                success=True,
                transaction_reference=transaction_reference,
                transaction_id=str(data.get("id")),
                status="successful",
                amount=_to_decimal(data.get("amount", amount)),
            )

        error_message = data.get("processor_response") or body.get("message") or "Charge failed"
        logger.warning(
            "Tokenized charge declined",
            transaction_reference=transaction_reference,
            http_status=response.status_code,
            error=error_message,
        )
        return ChargeResult(
            success=False,
            transaction_reference=transaction_reference,
            transaction_id=str(data["id"]) if data.get("id") else None,
            status=data.get("status") or "failed",
            error_message=error_message,
        )
