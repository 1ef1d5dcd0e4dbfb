"""
Payments router: checkout, status and Flutterwave notifications.
"""
import hmac
import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
import structlog

from carepro.api.dependencies import get_payment_gateway, get_payment_service
from carepro.api.services.payments import PaymentService
from carepro.core.exceptions import CareProException, GatewayError
from carepro.core.monitoring import increment_webhook_events
from carepro.core.security import AuthenticatedUser, get_current_user
from carepro.core.settings import settings
from carepro.db.models.payment import PaymentInitiate
from carepro.gateway.base import PaymentGateway

router = APIRouter(prefix="/payments", tags=["payments"])
logger = structlog.get_logger(__name__)


def verify_flutterwave_signature(signature: Optional[str], secret_hash: str) -> bool:
    """
    Compare the webhook hash header with the configured secret hash.

    Fails closed: with no secret configured every webhook is rejected.
    """
    if not secret_hash:
        logger.critical("Webhook secret hash not configured; rejecting webhook")
        return False
    if not signature:
        logger.warning("Missing webhook signature header")
        return False
    return hmac.compare_digest(signature.encode("utf-8"), secret_hash.encode("utf-8"))


def _webhook_response(status_code: int, success: bool, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": success, "message": message})


async def read_raw_body(request: Request) -> bytes:
    """Raw request body, read before the handler runs in the threadpool."""
    return await request.body()


@router.post("/initiate")
def initiate_payment(
    request: PaymentInitiate,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Start checkout for a gig. Pricing is computed server-side."""
    payment = service.create_pending_payment(current_user.id, request)
    return {
        "transaction_reference": payment.transaction_reference,
        "payment_link": payment.payment_link,
        "status": payment.status,
        "breakdown": payment.to_dict()["breakdown"],
    }


@router.get("/status/{transaction_reference}")
def get_payment_status(
    transaction_reference: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Status and fee breakdown of a payment; visible to its owner or an admin."""
    payment = service.get_payment_for_user(transaction_reference, current_user.id, current_user.is_admin)
    return payment.to_dict()


@router.post("/webhook")
def flutterwave_webhook(
    request: Request,
    payload: bytes = Depends(read_raw_body),
    service: PaymentService = Depends(get_payment_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Handle Flutterwave payment notifications.

    The hash header is checked first, then the transaction is re-verified
    with the gateway; the verified amount and reference are what settle
    the payment. Responses never carry internal error details.
    """
    signature = request.headers.get("verif-hash") or request.headers.get("flutterwave-signature")

    if not verify_flutterwave_signature(signature, settings.flutterwave_webhook_hash):
        logger.warning("Invalid webhook signature")
        increment_webhook_events("unknown", "rejected")
        return _webhook_response(status.HTTP_401_UNAUTHORIZED, False, "Invalid signature.")

    try:
        event_data: Dict[str, Any] = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error("Invalid JSON payload", error=str(e))
        increment_webhook_events("unknown", "invalid")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Invalid payload format.")
    if not isinstance(event_data, dict):
        increment_webhook_events("unknown", "invalid")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Invalid payload.")

    # v3 nests the transaction under "data"; older payloads are flat
    data = event_data.get("data") if isinstance(event_data.get("data"), dict) else event_data
    event_type = event_data.get("event") or "charge.completed"
    tx_status = str(data.get("status") or "").lower()
    tx_ref = data.get("tx_ref") or data.get("txRef") or ""
    transaction_id = str(data.get("id") or "")

    logger.info(
        "Received Flutterwave webhook",
        event_type=event_type,
        transaction_reference=tx_ref,
        status=tx_status,
    )

    if tx_status != "successful":
        logger.info("Ignoring non-successful webhook", status=tx_status, transaction_reference=tx_ref)
        increment_webhook_events(event_type, "ignored")
        return _webhook_response(status.HTTP_200_OK, True, "Webhook received.")

    if not transaction_id:
        increment_webhook_events(event_type, "invalid")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Invalid payload.")

    try:
        verification = gateway.verify_transaction(transaction_id)
    except GatewayError as e:
        logger.warning("Transaction verification failed", transaction_id=transaction_id, error=e.message)
        increment_webhook_events(event_type, "verification_failed")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Transaction verification failed.")

    if not verification.successful or (tx_ref and verification.transaction_reference != tx_ref):
        logger.warning(
            "Verified transaction does not match webhook",
            transaction_id=transaction_id,
            webhook_reference=tx_ref,
            verified_reference=verification.transaction_reference,
            verified_status=verification.status,
        )
        increment_webhook_events(event_type, "verification_failed")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Transaction verification failed.")

    try:
        service.complete_payment(
            verification.transaction_reference,
            verification.transaction_id,
            verification.amount,
        )
    except CareProException as e:
        logger.error(
            "Failed to complete payment from webhook",
            transaction_reference=verification.transaction_reference,
            error_type=type(e).__name__,
            error=e.message,
        )
        increment_webhook_events(event_type, "failed")
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Payment processing failed.")

    increment_webhook_events(event_type, "processed")
    return _webhook_response(status.HTTP_200_OK, True, "Payment processed successfully.")


@router.get("/callback")
def payment_callback(
    tx_ref: Optional[str] = None,
    transaction_id: Optional[str] = None,
    payer_status: Optional[str] = Query(None, alias="status"),
    service: PaymentService = Depends(get_payment_service),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Browser redirect target after hosted checkout.

    Settles the payment the same way the webhook does (whichever arrives
    first wins, the other is a replay), then redirects the payer to the
    URL they supplied at checkout.
    """
    if not tx_ref:
        return _webhook_response(status.HTTP_400_BAD_REQUEST, False, "Missing transaction reference.")

    payer_status = (payer_status or "").lower()
    try:
        payment = service.get_payment(tx_ref)
    except CareProException:
        return _webhook_response(status.HTTP_404_NOT_FOUND, False, "Payment not found.")

    try:
        if payer_status in ("successful", "completed") and transaction_id:
            verification = gateway.verify_transaction(transaction_id)
            if verification.successful and verification.transaction_reference == tx_ref:
                payment = service.complete_payment(tx_ref, verification.transaction_id, verification.amount)
        elif payer_status == "cancelled" and payment.status == "pending":
            payment = service.fail_payment(tx_ref, "Checkout cancelled by payer")
    except CareProException as e:
        logger.warning("Payment callback could not settle payment", transaction_reference=tx_ref, error=e.message)
        payment = service.get_payment(tx_ref)

    if not payment.redirect_url:
        return {"transaction_reference": tx_ref, "status": payment.status}

    query = urlencode({"transaction_reference": tx_ref, "status": payment.status})
    separator = "&" if "?" in payment.redirect_url else "?"
    return RedirectResponse(url=f"{payment.redirect_url}{separator}{query}", status_code=status.HTTP_302_FOUND)
