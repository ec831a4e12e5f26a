import logging

from django.db import transaction

from orders.models import CombinedOrder, Order
from orders.services import calculate_commission, notify_order_placed

logger = logging.getLogger(__name__)

EPS_PAYMENT_TYPE = "eps"


def verification_succeeded(verification) -> bool:
    return (
        isinstance(verification, dict)
        and "error" not in verification
        and verification.get("Status") == "Success"
    )


def verification_available(verification) -> bool:
    """True when the gateway actually answered the status check."""
    return isinstance(verification, dict) and "error" not in verification


def find_combined_order(pk):
    try:
        pk = int(pk)
    except (TypeError, ValueError):
        return None
    return CombinedOrder.objects.filter(pk=pk).first()


def apply_payment_status(combined_order, status, details, payment_type=None):
    """Move every order of ``combined_order`` to ``status`` in one transaction.

    A paid order is never downgraded, and failed/cancelled only replace
    pending, so a duplicate or late callback cannot undo a verified payment.
    Returns the orders that changed.
    """
    qs = Order.objects.select_for_update().filter(combined_order=combined_order)
    if status == Order.PAID:
        qs = qs.exclude(payment_status=Order.PAID)
    else:
        qs = qs.filter(payment_status=Order.PENDING)

    changed = []
    with transaction.atomic():
        for order in qs.order_by("pk"):
            order.payment_status = status
            order.payment_details = details
            fields = ["payment_status", "payment_details", "updated_at"]
            if payment_type:
                order.payment_type = payment_type
                fields.append("payment_type")
            order.save(update_fields=fields)
            changed.append(order)

    logger.info(
        "CombinedOrder %s: %d order(s) -> %s", combined_order.pk, len(changed), status
    )
    return changed


def mark_paid(combined_order, details):
    orders = apply_payment_status(combined_order, Order.PAID, details, payment_type=EPS_PAYMENT_TYPE)
    for order in orders:
        result = calculate_commission(order)
        if not result.ok:
            logger.error("Commission calculation failed for order=%s: %s", order.pk, result.error)

        if not order.notified:
            result = notify_order_placed(order)
            if result.ok:
                order.notified = True
                order.save(update_fields=["notified", "updated_at"])
            else:
                logger.error("Order placed notification failed for order=%s: %s", order.pk, result.error)
    return orders


def mark_failed(combined_order, details):
    return apply_payment_status(combined_order, Order.FAILED, details)


def mark_cancelled(combined_order, details):
    return apply_payment_status(combined_order, Order.CANCELLED, details)
