"""Hooks into collaborators that live outside the payment flow.

Commission calculation and order-placed notifications belong to other parts of
the shop. They are configured as dotted paths in settings and always run best
effort: a failing hook is logged and reported back, it never blocks the
order confirmation.
"""
import logging
from typing import NamedTuple, Optional

from django.conf import settings
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


class HookResult(NamedTuple):
    ok: bool
    error: Optional[str] = None


def _run_hook(setting_name: str, order) -> HookResult:
    path = getattr(settings, setting_name, None)
    if not path:
        return HookResult(ok=True)
    try:
        handler = import_string(path)
        handler(order)
    except Exception as e:
        logger.exception("%s (%s) failed for order=%s", setting_name, path, order.pk)
        return HookResult(ok=False, error=str(e))
    return HookResult(ok=True)


def calculate_commission(order) -> HookResult:
    return _run_hook("ORDERS_COMMISSION_HANDLER", order)


def notify_order_placed(order) -> HookResult:
    return _run_hook("ORDERS_NOTIFICATION_HANDLER", order)
