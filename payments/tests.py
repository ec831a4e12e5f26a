import base64
import hashlib
import hmac
from decimal import Decimal
from unittest.mock import patch

import requests
from django.core.exceptions import ImproperlyConfigured
from django.test import RequestFactory, SimpleTestCase, TestCase

from orders.models import CombinedOrder, Order

from . import services, utils
from .integrations.eps import EpsClient, EpsConfig, generate_hash


class FakeResponse:
    def __init__(self, data=None, status_code=200, text=""):
        self._data = data
        self.status_code = status_code
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data


def make_config(**overrides):
    conf = {
        "BASE_URL": "https://eps.example.com/v1/",
        "MERCHANT_ID": "m-1",
        "STORE_ID": "s-1",
        "USERNAME": "shop@example.com",
        "PASSWORD": "pw",
        "HASH_KEY": "hash-key",
        "TIMEOUT": 7,
    }
    conf.update(overrides)
    return EpsConfig.from_settings(conf)


class GenerateHashTests(SimpleTestCase):
    def test_matches_base64_hmac_sha512(self):
        expected = base64.b64encode(
            hmac.new(b"hash-key", b"TXN123", hashlib.sha512).digest()
        ).decode()
        self.assertEqual(generate_hash("TXN123", "hash-key"), expected)

    def test_is_deterministic(self):
        self.assertEqual(generate_hash("abc", "k"), generate_hash("abc", "k"))
        self.assertNotEqual(generate_hash("abc", "k"), generate_hash("abc", "other"))

    def test_unicode_key_and_payload(self):
        expected = base64.b64encode(
            hmac.new("ключ".encode("utf-8"), "ঢাকা".encode("utf-8"), hashlib.sha512).digest()
        ).decode()
        self.assertEqual(generate_hash("ঢাকা", "ключ"), expected)


class EpsConfigTests(SimpleTestCase):
    def test_missing_credentials_raise(self):
        with self.assertLogs("payments.integrations.eps", level="ERROR"):
            with self.assertRaises(ImproperlyConfigured) as cm:
                EpsConfig.from_settings({"MERCHANT_ID": "m", "USERNAME": "u"})
        self.assertIn("STORE_ID", str(cm.exception))
        self.assertIn("HASH_KEY", str(cm.exception))

    def test_defaults_and_trailing_slash(self):
        config = make_config(BASE_URL="", TIMEOUT=None)
        self.assertEqual(config.base_url, "https://sandboxpgapi.eps.com.bd/v1")
        self.assertEqual(config.timeout, 30)
        self.assertEqual(make_config().base_url, "https://eps.example.com/v1")

    def test_reads_django_settings(self):
        config = EpsConfig.from_settings()
        self.assertEqual(config.merchant_id, "merchant-1")
        self.assertEqual(config.base_url, "https://eps.example.com/v1")


class EpsClientTests(SimpleTestCase):
    def setUp(self):
        self.client_ = EpsClient(make_config())

    def test_get_token_signs_username(self):
        with patch("payments.integrations.eps.requests.post", return_value=FakeResponse({"token": "tok"})) as post:
            data = self.client_.get_token()
        self.assertEqual(data, {"token": "tok"})
        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://eps.example.com/v1/Auth/GetToken")
        self.assertEqual(post.call_args.kwargs["json"], {"userName": "shop@example.com", "password": "pw"})
        self.assertEqual(post.call_args.kwargs["headers"]["x-hash"], generate_hash("shop@example.com", "hash-key"))
        self.assertEqual(post.call_args.kwargs["timeout"], 7)

    def test_get_token_network_error_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post", side_effect=requests.ConnectionError("refused")
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.get_token()
        self.assertEqual(data["error"], "token_request_failed")
        self.assertIn("refused", data["message"])

    def test_initialize_sends_strings_with_bearer_and_txn_hash(self):
        responses = [FakeResponse({"token": "tok"}), FakeResponse({"RedirectURL": "https://pay.eps/x"})]
        payload = {
            "CustomerOrderId": 42,
            "merchantTransactionId": "TXN1",
            "totalAmount": Decimal("1500.50"),
            "customerName": "Rahim",
            "customerPhone": 8801700000000,
            "customerCity": None,
        }
        with patch("payments.integrations.eps.requests.post", side_effect=responses) as post:
            data = self.client_.initialize_payment(payload)

        self.assertEqual(data, {"RedirectURL": "https://pay.eps/x"})
        self.assertEqual(post.call_count, 2)
        url = post.call_args_list[1].args[0]
        kwargs = post.call_args_list[1].kwargs
        self.assertEqual(url, "https://eps.example.com/v1/EPSEngine/InitializeEPS")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(kwargs["headers"]["x-hash"], generate_hash("TXN1", "hash-key"))

        body = kwargs["json"]
        for key, value in body.items():
            self.assertIsInstance(value, str, key)
        self.assertEqual(body["CustomerOrderId"], "42")
        self.assertEqual(body["totalAmount"], "1500.50")
        self.assertEqual(body["customerPhone"], "8801700000000")
        self.assertEqual(body["customerCity"], "")
        self.assertEqual(body["transactionTypeId"], "1")
        self.assertEqual(body["merchantId"], "m-1")
        self.assertEqual(body["storeId"], "s-1")

    def test_customer_order_id_always_string(self):
        for order_id in (0, 7, 10**12, "A-1", None):
            body = self.client_.build_initialize_body({"CustomerOrderId": order_id})
            self.assertIsInstance(body["CustomerOrderId"], str)

    def test_missing_token_short_circuits_initialize(self):
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({"message": "bad creds"})
        ) as post, self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.initialize_payment({"merchantTransactionId": "TXN1"})
        post.assert_called_once()
        self.assertEqual(data["error"], "token_generation_failed")
        self.assertEqual(data["details"], {"message": "bad creds"})

    def test_missing_token_short_circuits_verify(self):
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({})
        ) as post, patch("payments.integrations.eps.requests.get") as get, self.assertLogs(
            "payments.integrations.eps", level="ERROR"
        ):
            data = self.client_.verify_transaction("TXN1")
        post.assert_called_once()
        get.assert_not_called()
        self.assertEqual(data["error"], "token_generation_failed")

    def test_initialize_timeout_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post",
            side_effect=[FakeResponse({"token": "tok"}), requests.Timeout("timed out")],
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.initialize_payment({"merchantTransactionId": "TXN1"})
        self.assertEqual(data["error"], "initialize_request_failed")

    def test_verify_uses_get_with_query_and_hash(self):
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({"token": "tok"})
        ), patch(
            "payments.integrations.eps.requests.get",
            return_value=FakeResponse({"Status": "Success", "CustomerOrderId": "42"}),
        ) as get:
            data = self.client_.verify_transaction("TXN9")
        self.assertEqual(data["Status"], "Success")
        self.assertEqual(get.call_args.args[0], "https://eps.example.com/v1/EPSEngine/CheckMerchantTransactionStatus")
        self.assertEqual(get.call_args.kwargs["params"], {"merchantTransactionId": "TXN9"})
        self.assertEqual(get.call_args.kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(get.call_args.kwargs["headers"]["x-hash"], generate_hash("TXN9", "hash-key"))

    def test_verify_network_error_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({"token": "tok"})
        ), patch(
            "payments.integrations.eps.requests.get", side_effect=requests.ConnectionError("reset")
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.verify_transaction("TXN9")
        self.assertEqual(data, {"error": "verify_request_failed", "message": "reset"})

    def test_http_error_status_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({"token": "tok"})
        ), patch(
            "payments.integrations.eps.requests.get",
            return_value=FakeResponse({"Status": "Failed"}, status_code=500),
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.verify_transaction("TXN9")
        self.assertEqual(data["error"], "verify_request_failed")
        self.assertEqual(data["status_code"], 500)
        self.assertEqual(data["details"], {"Status": "Failed"})
        self.assertFalse(services.verification_available(data))

    def test_unauthorized_token_response_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post",
            return_value=FakeResponse({"token": "stale"}, status_code=401),
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.initialize_payment({"merchantTransactionId": "TXN1"})
        self.assertEqual(data["error"], "token_generation_failed")
        self.assertEqual(data["details"]["status_code"], 401)

    def test_non_json_body_is_structured(self):
        with patch(
            "payments.integrations.eps.requests.post",
            return_value=FakeResponse(None, status_code=502, text="<html>Bad gateway</html>"),
        ), self.assertLogs("payments.integrations.eps", level="ERROR"):
            data = self.client_.get_token()
        self.assertEqual(data["error"], "token_request_failed")


class UtilsTests(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.combined_order = CombinedOrder.objects.create(
            grand_total=Decimal("100.00"),
            shipping_address={
                "name": "Karim",
                "email": "karim@example.com",
                "address": "12 Lake Road",
                "city": "Dhaka",
                "state_id": "13",
                "postal_code": "1212",
                "country": "Bangladesh",
                "phone": "01700000000",
            },
        )

    def test_falls_back_to_shipping_address(self):
        request = self.factory.post("/eps/pay", {})
        fields = utils.customer_fields(request, self.combined_order)
        self.assertEqual(fields["customerName"], "Karim")
        self.assertEqual(fields["customerEmail"], "karim@example.com")
        self.assertEqual(fields["customerAddress"], "12 Lake Road")
        self.assertEqual(fields["customerCity"], "Dhaka")
        self.assertEqual(fields["customerState"], "13")
        self.assertEqual(fields["customerCountry"], "Bangladesh")

    def test_request_input_wins(self):
        request = self.factory.post("/eps/pay", {"name": "Rahim", "city_id": "Sylhet"})
        fields = utils.customer_fields(request, self.combined_order)
        self.assertEqual(fields["customerName"], "Rahim")
        self.assertEqual(fields["customerCity"], "Sylhet")
        self.assertEqual(fields["customerEmail"], "karim@example.com")

    def test_absent_everywhere_is_none(self):
        empty = CombinedOrder.objects.create(grand_total=Decimal("1.00"))
        fields = utils.customer_fields(self.factory.get("/eps/pay"), empty)
        self.assertEqual(set(fields.values()), {None})

    def test_transaction_ids_are_unique_alnum(self):
        ids = {utils.generate_merchant_transaction_id() for _ in range(200)}
        self.assertEqual(len(ids), 200)
        for txn_id in ids:
            self.assertEqual(len(txn_id), 30)
            self.assertTrue(txn_id.isalnum())

    def test_request_params_merges_get_and_post(self):
        request = self.factory.post("/eps/fail?CustomerOrderId=1", {"status": "failed"})
        self.assertEqual(utils.request_params(request), {"CustomerOrderId": "1", "status": "failed"})


class PaymentStatusTransitionTests(TestCase):
    def setUp(self):
        self.combined_order = CombinedOrder.objects.create(grand_total=Decimal("300.00"))
        self.orders = [
            Order.objects.create(combined_order=self.combined_order, grand_total=Decimal("100.00"))
            for _ in range(3)
        ]

    def _statuses(self):
        return list(self.combined_order.orders.order_by("pk").values_list("payment_status", flat=True))

    def test_mark_paid_updates_every_order(self):
        changed = services.mark_paid(self.combined_order, {"Status": "Success"})
        self.assertEqual(len(changed), 3)
        self.assertEqual(self._statuses(), ["paid"] * 3)
        for order in self.combined_order.orders.all():
            self.assertEqual(order.payment_type, "eps")
            self.assertEqual(order.payment_details, {"Status": "Success"})
            self.assertTrue(order.notified)

    def test_failed_does_not_downgrade_paid(self):
        services.mark_paid(self.combined_order, {"Status": "Success"})
        changed = services.mark_failed(self.combined_order, {"status": "fail"})
        self.assertEqual(changed, [])
        self.assertEqual(self._statuses(), ["paid"] * 3)

    def test_cancel_only_touches_pending(self):
        services.mark_cancelled(self.combined_order, {})
        self.assertEqual(self._statuses(), ["cancelled"] * 3)
        services.mark_failed(self.combined_order, {})
        self.assertEqual(self._statuses(), ["cancelled"] * 3)

    def test_verified_payment_overrides_earlier_failure(self):
        services.mark_failed(self.combined_order, {})
        services.mark_paid(self.combined_order, {"Status": "Success"})
        self.assertEqual(self._statuses(), ["paid"] * 3)

    def test_notification_failure_leaves_notified_false(self):
        with self.settings(ORDERS_NOTIFICATION_HANDLER="orders.tests.broken_handler"), self.assertLogs(
            "payments.services", level="ERROR"
        ):
            services.mark_paid(self.combined_order, {"Status": "Success"})
        self.assertEqual(self._statuses(), ["paid"] * 3)
        self.assertFalse(self.combined_order.orders.filter(notified=True).exists())

    def test_verification_classification(self):
        self.assertTrue(services.verification_succeeded({"Status": "Success"}))
        self.assertFalse(services.verification_succeeded({"Status": "Failed"}))
        self.assertFalse(services.verification_succeeded({"Status": "Success", "error": "x"}))
        self.assertFalse(services.verification_succeeded(None))
        self.assertTrue(services.verification_available({"Status": "Failed"}))
        self.assertFalse(services.verification_available({"error": "verify_request_failed"}))

    def test_find_combined_order_ignores_garbage(self):
        self.assertIsNone(services.find_combined_order("abc"))
        self.assertIsNone(services.find_combined_order(None))
        self.assertEqual(services.find_combined_order(str(self.combined_order.pk)), self.combined_order)
