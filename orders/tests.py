from decimal import Decimal

from django.test import TestCase, override_settings

from .models import CombinedOrder, Order
from .services import calculate_commission, notify_order_placed

CALLS = []


def record_call(order):
    CALLS.append(order.pk)


def broken_handler(order):
    raise RuntimeError("commission service down")


class CombinedOrderShippingTests(TestCase):
    def test_dict_shipping_address(self):
        co = CombinedOrder.objects.create(shipping_address={"name": "Rahim"}, grand_total=Decimal("10.00"))
        self.assertEqual(co.shipping(), {"name": "Rahim"})

    def test_legacy_json_string_is_decoded(self):
        co = CombinedOrder(shipping_address='{"name": "Rahim", "city": "Dhaka"}')
        self.assertEqual(co.shipping(), {"name": "Rahim", "city": "Dhaka"})

    def test_garbage_string_gives_empty_dict(self):
        co = CombinedOrder(shipping_address="not json")
        self.assertEqual(co.shipping(), {})

    def test_orders_default_to_pending(self):
        co = CombinedOrder.objects.create(grand_total=Decimal("10.00"))
        order = Order.objects.create(combined_order=co, grand_total=Decimal("10.00"))
        self.assertEqual(order.payment_status, Order.PENDING)
        self.assertFalse(order.notified)
        self.assertFalse(order.is_paid)


class OrderHookTests(TestCase):
    def setUp(self):
        CALLS.clear()
        co = CombinedOrder.objects.create(grand_total=Decimal("10.00"))
        self.order = Order.objects.create(combined_order=co, grand_total=Decimal("10.00"))

    def test_unconfigured_hook_is_a_successful_noop(self):
        result = calculate_commission(self.order)
        self.assertTrue(result.ok)
        self.assertIsNone(result.error)

    @override_settings(ORDERS_NOTIFICATION_HANDLER="orders.tests.record_call")
    def test_configured_hook_is_called(self):
        result = notify_order_placed(self.order)
        self.assertTrue(result.ok)
        self.assertEqual(CALLS, [self.order.pk])

    @override_settings(ORDERS_COMMISSION_HANDLER="orders.tests.broken_handler")
    def test_failing_hook_is_logged_not_raised(self):
        with self.assertLogs("orders.services", level="ERROR") as cm:
            result = calculate_commission(self.order)
        self.assertFalse(result.ok)
        self.assertIn("commission service down", result.error)
        self.assertIn("ORDERS_COMMISSION_HANDLER", cm.output[0])

    @override_settings(ORDERS_COMMISSION_HANDLER="orders.tests.does_not_exist")
    def test_bad_dotted_path_is_a_failed_result(self):
        with self.assertLogs("orders.services", level="ERROR"):
            result = calculate_commission(self.order)
        self.assertFalse(result.ok)
