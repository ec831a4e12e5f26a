import logging
from decimal import Decimal

from django.conf import settings
from django.contrib import messages
from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError, transaction
from django.shortcuts import redirect
from django.urls import reverse
from django.views.decorators.csrf import csrf_exempt

from . import services
from .integrations.eps import get_client
from .models import EpsTransaction
from .utils import customer_fields, generate_merchant_transaction_id, request_params

logger = logging.getLogger(__name__)

SESSION_KEY = "combined_order_id"
TRANSIENT_SESSION_KEYS = ("order_id", "payment_data")
TXN_ID_KEYS = ("merchantTransactionId", "MerchantTransactionId", "EPSTransactionId")
ORDER_ID_KEYS = ("CustomerOrderId", "customerOrderId")


def _create_transaction(combined_order) -> EpsTransaction:
    # The unique constraint is the source of truth; regenerate on collision.
    max_attempts = 5
    for attempt in range(1, max_attempts + 1):
        try:
            with transaction.atomic():
                return EpsTransaction.objects.create(
                    merchant_transaction_id=generate_merchant_transaction_id(),
                    combined_order=combined_order,
                    amount=combined_order.grand_total,
                )
        except IntegrityError:
            logger.warning("merchantTransactionId collision for combined_order=%s (attempt %s)",
                           combined_order.pk, attempt)
    raise IntegrityError("Could not allocate a unique merchantTransactionId")


def _payment_data(request, combined_order, txn) -> dict:
    customer = customer_fields(request, combined_order)
    params = request_params(request)
    if not (params.get("name") and params.get("email") and params.get("address")):
        logger.info(
            "EPS payment falling back to shipping_address for combined_order=%s (shipping_available=%s)",
            combined_order.pk, bool(combined_order.shipping()),
        )
    return {
        "CustomerOrderId": combined_order.pk,
        "merchantTransactionId": txn.merchant_transaction_id,
        "totalAmount": f"{Decimal(str(combined_order.grand_total)):.2f}",
        "successUrl": request.build_absolute_uri(reverse("payments:eps_success")),
        "failUrl": request.build_absolute_uri(reverse("payments:eps_fail")),
        "cancelUrl": request.build_absolute_uri(reverse("payments:eps_cancel")),
        **customer,
        "productName": f"Order #{combined_order.pk}",
    }


def eps_pay_view(request):
    """Start an EPS payment for the combined order in session and send the buyer to the hosted page."""
    combined_order = services.find_combined_order(request.session.get(SESSION_KEY))
    if combined_order is None:
        messages.error(request, "Order not found for payment.")
        return redirect("checkout")

    try:
        client = get_client()
        txn = _create_transaction(combined_order)
    except (ImproperlyConfigured, IntegrityError):
        logger.exception("EPS payment could not start for combined_order=%s", combined_order.pk)
        messages.error(request, "EPS Payment initialization failed. Please contact support.")
        return redirect("checkout")

    payment_data = _payment_data(request, combined_order, txn)
    logger.info("EPS payment data prepared for combined_order=%s txn=%s",
                combined_order.pk, txn.merchant_transaction_id)

    response = client.initialize_payment(payment_data)
    redirect_url = response.get("RedirectURL")

    txn.raw_req = client.build_initialize_body(payment_data)
    txn.raw_resp = response
    txn.status = EpsTransaction.REDIRECTED if redirect_url else EpsTransaction.FAILED
    txn.save(update_fields=["raw_req", "raw_resp", "status", "updated_at"])

    if not redirect_url:
        logger.error("EPS initialization returned no RedirectURL for txn=%s: %s",
                     txn.merchant_transaction_id, response)
        messages.error(request, "EPS Payment initialization failed!")
        return redirect("checkout")

    return redirect(redirect_url)


def _verify(merchant_txn_id):
    try:
        client = get_client()
    except ImproperlyConfigured as e:
        logger.exception("EPS verification skipped for txn=%s", merchant_txn_id)
        return {"error": "configuration_error", "message": str(e)}
    return client.verify_transaction(merchant_txn_id)


def _trust_status_param() -> bool:
    return bool((getattr(settings, "EPS", None) or {}).get("TRUST_STATUS_PARAM", False))


def _first(params, keys):
    return next((params[k] for k in keys if params.get(k)), None)


def _record_outcome(txn, status, verification=None):
    """Store the callback result on the ledger row; ``status=None`` keeps the current status."""
    if txn is None or (txn.status == EpsTransaction.PAID and status != EpsTransaction.PAID):
        return
    fields = ["updated_at"]
    if status is not None:
        txn.status = status
        fields.append("status")
    if verification is not None:
        txn.verification = verification
        fields.append("verification")
    txn.save(update_fields=fields)


def _verified_order_id(verification):
    if not isinstance(verification, dict):
        return None
    pk = verification.get("CustomerOrderId")
    nested = verification.get("response")
    if not pk and isinstance(nested, dict):
        pk = nested.get("CustomerOrderId")
    return str(pk) if pk else None


def _resolve_success_order(request, txn, verification):
    """Return ``(combined_order, mismatch)`` for a success callback.

    The ledger row owns the transaction; the session and the gateway's
    CustomerOrderId must agree with it.
    """
    session_order = services.find_combined_order(request.session.get(SESSION_KEY))
    verified_pk = _verified_order_id(verification)
    if txn is not None:
        combined_order = txn.combined_order
    elif session_order is not None:
        combined_order = session_order
    else:
        combined_order = services.find_combined_order(verified_pk)
    if combined_order is None:
        return None, False
    mismatch = (
        (session_order is not None and session_order.pk != combined_order.pk)
        or (verified_pk is not None and verified_pk != str(combined_order.pk))
    )
    return combined_order, mismatch


@csrf_exempt
def eps_success_view(request):
    params = request_params(request)
    merchant_txn_id = _first(params, TXN_ID_KEYS)
    txn = None
    verification = None
    if merchant_txn_id:
        txn = EpsTransaction.objects.select_related("combined_order").filter(
            merchant_transaction_id=merchant_txn_id
        ).first()
        verification = _verify(merchant_txn_id)

    combined_order, mismatch = _resolve_success_order(request, txn, verification)
    if mismatch:
        logger.warning(
            "EPS txn=%s does not belong to the order in session (ledger/verified order=%s, session=%s)",
            merchant_txn_id, combined_order.pk, request.session.get(SESSION_KEY),
        )
        messages.error(
            request, "EPS Payment could not be verified as successful. If money was deducted, contact support."
        )
        return redirect("checkout")

    is_paid = services.verification_succeeded(verification)
    if is_paid and txn is None and _verified_order_id(verification) is None:
        logger.warning("EPS txn=%s verified but cannot be tied to an order; not marking paid", merchant_txn_id)
        is_paid = False
    if not is_paid and not services.verification_available(verification):
        claimed = params.get("status") == "success" or params.get("payment_status") == "success"
        if claimed and combined_order is not None:
            if _trust_status_param():
                logger.warning(
                    "EPS verification unavailable for txn=%s; trusting status=success for combined_order=%s",
                    merchant_txn_id, combined_order.pk,
                )
                is_paid = True
            else:
                logger.warning(
                    "EPS verification unavailable for txn=%s; ignoring unverified status=success", merchant_txn_id
                )

    details = verification or params

    if is_paid and combined_order is not None:
        services.mark_paid(combined_order, details)
        _record_outcome(txn, EpsTransaction.PAID, verification)
        request.session[SESSION_KEY] = combined_order.pk
        messages.success(request, "Payment completed successfully")
        return redirect("order_confirmed")

    if combined_order is not None:
        services.mark_failed(combined_order, details)
    if services.verification_available(verification):
        _record_outcome(txn, EpsTransaction.FAILED, verification)
    else:
        # Gateway did not answer; leave the row for reconcile_eps_transactions.
        _record_outcome(txn, None, verification)
    messages.error(
        request, "EPS Payment could not be verified as successful. If money was deducted, contact support."
    )
    return redirect("checkout")


def _close_payment(request, apply, txn_status, message):
    params = request_params(request)
    combined_order = services.find_combined_order(
        request.session.get(SESSION_KEY) or _first(params, ORDER_ID_KEYS)
    )
    if combined_order is not None:
        apply(combined_order, params)
    else:
        logger.warning("EPS %s callback without a resolvable combined order: %s", txn_status, params)

    merchant_txn_id = _first(params, TXN_ID_KEYS)
    if merchant_txn_id:
        _record_outcome(
            EpsTransaction.objects.filter(merchant_transaction_id=merchant_txn_id).first(), txn_status
        )

    for key in TRANSIENT_SESSION_KEYS:
        request.session.pop(key, None)
    messages.warning(request, message)
    return redirect("home")


@csrf_exempt
def eps_fail_view(request):
    """Explicit failure callback from EPS."""
    return _close_payment(request, services.mark_failed, EpsTransaction.FAILED, "Payment Failed")


@csrf_exempt
def eps_cancel_view(request):
    """Buyer cancelled on the EPS hosted page."""
    return _close_payment(request, services.mark_cancelled, EpsTransaction.CANCELLED, "Payment cancelled")
