from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.contrib.messages import get_messages
from django.core.exceptions import ImproperlyConfigured
from django.test import TestCase, override_settings
from django.urls import reverse

from orders.models import CombinedOrder, Order

from .models import EpsTransaction
from .tests import FakeResponse


class EpsViewTestMixin:
    def setUp(self):
        self.combined_order = CombinedOrder.objects.create(
            grand_total=Decimal("1500.00"),
            shipping_address={
                "name": "Karim",
                "email": "karim@example.com",
                "address": "12 Lake Road",
                "city": "Dhaka",
                "postal_code": "1212",
                "country": "Bangladesh",
                "phone": "01700000000",
            },
        )
        self.orders = [
            Order.objects.create(combined_order=self.combined_order, grand_total=Decimal("500.00"))
            for _ in range(3)
        ]

    def set_session(self, **values):
        session = self.client.session
        session.update(values)
        session.save()

    def statuses(self):
        return list(self.combined_order.orders.order_by("pk").values_list("payment_status", flat=True))

    def message_texts(self, resp):
        return [str(m) for m in get_messages(resp.wsgi_request)]

    def mock_client(self, verification):
        client = MagicMock()
        client.verify_transaction.return_value = verification
        return patch("payments.views.get_client", return_value=client)


class EpsPayViewTests(EpsViewTestMixin, TestCase):
    def test_missing_order_redirects_to_checkout(self):
        resp = self.client.post(reverse("payments:eps_pay"))
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertIn("Order not found for payment.", self.message_texts(resp))
        self.assertFalse(EpsTransaction.objects.exists())

    def test_redirects_to_gateway_with_shipping_fallback(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        responses = [FakeResponse({"token": "tok"}), FakeResponse({"RedirectURL": "https://pay.eps.example/abc"})]
        with patch("payments.integrations.eps.requests.post", side_effect=responses) as post, \
                self.assertLogs("payments.views", level="INFO") as cm:
            resp = self.client.post(reverse("payments:eps_pay"), {"phone": "01811111111"})

        self.assertEqual(resp.status_code, 302)
        self.assertEqual(resp["Location"], "https://pay.eps.example/abc")
        self.assertTrue(any("falling back to shipping_address" in line for line in cm.output))

        body = post.call_args_list[1].kwargs["json"]
        self.assertTrue(all(isinstance(v, str) for v in body.values()))
        self.assertEqual(body["CustomerOrderId"], str(self.combined_order.pk))
        self.assertEqual(body["totalAmount"], "1500.00")
        self.assertEqual(body["customerName"], "Karim")
        self.assertEqual(body["customerEmail"], "karim@example.com")
        self.assertEqual(body["customerAddress"], "12 Lake Road")
        self.assertEqual(body["customerPhone"], "01811111111")
        self.assertEqual(body["productName"], f"Order #{self.combined_order.pk}")
        self.assertEqual(body["successUrl"], "http://testserver/eps/success")
        self.assertEqual(body["failUrl"], "http://testserver/eps/fail")
        self.assertEqual(body["cancelUrl"], "http://testserver/eps/cancel")

        txn = EpsTransaction.objects.get()
        self.assertEqual(txn.status, EpsTransaction.REDIRECTED)
        self.assertEqual(txn.merchant_transaction_id, body["merchantTransactionId"])
        self.assertEqual(txn.raw_resp, {"RedirectURL": "https://pay.eps.example/abc"})
        self.assertEqual(self.statuses(), ["pending"] * 3)

    def test_token_failure_redirects_back(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        with patch(
            "payments.integrations.eps.requests.post", return_value=FakeResponse({"message": "denied"})
        ) as post, self.assertLogs("payments", level="ERROR"):
            resp = self.client.post(reverse("payments:eps_pay"))
        post.assert_called_once()
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertIn("EPS Payment initialization failed!", self.message_texts(resp))
        self.assertEqual(EpsTransaction.objects.get().status, EpsTransaction.FAILED)

    def test_missing_redirect_url_redirects_back(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        responses = [FakeResponse({"token": "tok"}), FakeResponse({"message": "invalid store"})]
        with patch("payments.integrations.eps.requests.post", side_effect=responses), \
                self.assertLogs("payments.views", level="ERROR"):
            resp = self.client.get(reverse("payments:eps_pay"))
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)

    def test_configuration_error_redirects_back(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        with patch("payments.views.get_client", side_effect=ImproperlyConfigured("missing")), \
                self.assertLogs("payments.views", level="ERROR"):
            resp = self.client.post(reverse("payments:eps_pay"))
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertFalse(EpsTransaction.objects.exists())


class EpsSuccessViewTests(EpsViewTestMixin, TestCase):
    def test_verified_success_marks_all_orders_paid(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        verification = {"Status": "Success", "CustomerOrderId": str(self.combined_order.pk)}
        with self.mock_client(verification) as get_client:
            resp = self.client.post(reverse("payments:eps_success"), {"MerchantTransactionId": "TXN1"})

        get_client.return_value.verify_transaction.assert_called_once_with("TXN1")
        self.assertRedirects(resp, reverse("order_confirmed"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["paid"] * 3)
        self.assertFalse(self.combined_order.orders.filter(payment_status=Order.PENDING).exists())
        for order in self.combined_order.orders.all():
            self.assertEqual(order.payment_details, verification)
            self.assertEqual(order.payment_type, "eps")
            self.assertTrue(order.notified)
        self.assertEqual(self.client.session["combined_order_id"], self.combined_order.pk)
        self.assertIn("Payment completed successfully", self.message_texts(resp))

    def test_success_without_session_uses_transaction_ledger(self):
        EpsTransaction.objects.create(
            merchant_transaction_id="TXN2", combined_order=self.combined_order, amount=Decimal("1500.00"),
            status=EpsTransaction.REDIRECTED,
        )
        with self.mock_client({"Status": "Success"}):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "TXN2"})
        self.assertRedirects(resp, reverse("order_confirmed"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["paid"] * 3)
        txn = EpsTransaction.objects.get(merchant_transaction_id="TXN2")
        self.assertEqual(txn.status, EpsTransaction.PAID)
        self.assertEqual(txn.verification, {"Status": "Success"})
        self.assertEqual(self.client.session["combined_order_id"], self.combined_order.pk)

    def test_success_without_session_uses_verified_customer_order_id(self):
        verification = {"Status": "Success", "CustomerOrderId": str(self.combined_order.pk)}
        with self.mock_client(verification):
            resp = self.client.get(reverse("payments:eps_success"), {"MerchantTransactionId": "UNKNOWN"})
        self.assertRedirects(resp, reverse("order_confirmed"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["paid"] * 3)

    def test_failed_verification_marks_orders_failed(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        with self.mock_client({"Status": "Failed"}):
            resp = self.client.post(reverse("payments:eps_success"), {"MerchantTransactionId": "TXN1"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)
        self.assertIn(
            "EPS Payment could not be verified as successful. If money was deducted, contact support.",
            self.message_texts(resp),
        )

    def test_verification_error_without_claim_marks_failed(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        error = {"error": "verify_request_failed", "message": "timeout"}
        with self.mock_client(error):
            resp = self.client.post(reverse("payments:eps_success"), {"MerchantTransactionId": "TXN1"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)
        self.assertEqual(self.combined_order.orders.first().payment_details, error)

    def test_unverified_status_param_is_ignored_by_default(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        with self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"status": "success"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)

    def test_status_param_trusted_only_when_enabled(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        eps = {
            "BASE_URL": "https://eps.example.com/v1", "MERCHANT_ID": "m", "STORE_ID": "s",
            "USERNAME": "u", "PASSWORD": "p", "HASH_KEY": "k", "TRUST_STATUS_PARAM": True,
        }
        with override_settings(EPS=eps), self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"status": "success"})
        self.assertRedirects(resp, reverse("order_confirmed"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["paid"] * 3)
        self.assertEqual(self.combined_order.orders.first().payment_details, {"status": "success"})

    def test_status_param_never_overrides_a_gateway_answer(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        eps = {
            "BASE_URL": "https://eps.example.com/v1", "MERCHANT_ID": "m", "STORE_ID": "s",
            "USERNAME": "u", "PASSWORD": "p", "HASH_KEY": "k", "TRUST_STATUS_PARAM": True,
        }
        with override_settings(EPS=eps), self.mock_client({"Status": "Failed"}):
            resp = self.client.get(
                reverse("payments:eps_success"), {"MerchantTransactionId": "TXN1", "status": "success"}
            )
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)

    def test_duplicate_fail_after_success_keeps_paid(self):
        EpsTransaction.objects.create(
            merchant_transaction_id="TXN1", combined_order=self.combined_order, amount=Decimal("1500.00"),
            status=EpsTransaction.REDIRECTED,
        )
        self.set_session(combined_order_id=self.combined_order.pk)
        with self.mock_client({"Status": "Success"}):
            self.client.post(reverse("payments:eps_success"), {"MerchantTransactionId": "TXN1"})
        self.client.post(reverse("payments:eps_fail"))
        self.assertEqual(self.statuses(), ["paid"] * 3)

    def _other_order(self, total="50.00"):
        other = CombinedOrder.objects.create(grand_total=Decimal(total))
        Order.objects.create(combined_order=other, grand_total=Decimal(total))
        return other

    def test_paid_transaction_of_another_order_is_rejected(self):
        cheap = self._other_order()
        EpsTransaction.objects.create(
            merchant_transaction_id="CHEAP", combined_order=cheap, amount=Decimal("50.00"),
            status=EpsTransaction.PAID,
        )
        self.set_session(combined_order_id=self.combined_order.pk)
        verification = {"Status": "Success", "CustomerOrderId": str(cheap.pk)}
        with self.mock_client(verification), self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "CHEAP"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["pending"] * 3)
        self.assertEqual(EpsTransaction.objects.get().status, EpsTransaction.PAID)

    def test_verified_order_id_must_match_session_order(self):
        other = self._other_order()
        self.set_session(combined_order_id=self.combined_order.pk)
        verification = {"Status": "Success", "CustomerOrderId": str(other.pk)}
        with self.mock_client(verification), self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "UNKNOWN"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["pending"] * 3)
        self.assertEqual(
            list(other.orders.values_list("payment_status", flat=True)), [Order.PENDING]
        )

    def test_unknown_transaction_without_order_id_is_not_paid(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        with self.mock_client({"Status": "Success"}), self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "UNKNOWN"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)

    def test_non_object_response_field_does_not_crash(self):
        with self.mock_client({"Status": "Success", "response": "unexpected"}), \
                self.assertLogs("payments.views", level="WARNING"):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "UNKNOWN"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["pending"] * 3)

    def test_verification_error_keeps_transaction_open(self):
        EpsTransaction.objects.create(
            merchant_transaction_id="TXN4", combined_order=self.combined_order, amount=Decimal("1500.00"),
            status=EpsTransaction.REDIRECTED,
        )
        error = {"error": "verify_request_failed", "message": "timeout"}
        with self.mock_client(error):
            resp = self.client.get(reverse("payments:eps_success"), {"merchantTransactionId": "TXN4"})
        self.assertRedirects(resp, reverse("checkout"), fetch_redirect_response=False)
        txn = EpsTransaction.objects.get()
        self.assertEqual(txn.status, EpsTransaction.REDIRECTED)
        self.assertEqual(txn.verification, error)


class EpsFailCancelViewTests(EpsViewTestMixin, TestCase):
    def test_fail_marks_orders_and_clears_session(self):
        self.set_session(combined_order_id=self.combined_order.pk, order_id=5, payment_data={"a": 1})
        resp = self.client.post(reverse("payments:eps_fail"), {"MerchantTransactionId": "TXN1"})
        self.assertRedirects(resp, reverse("home"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["failed"] * 3)
        self.assertEqual(
            self.combined_order.orders.first().payment_details, {"MerchantTransactionId": "TXN1"}
        )
        session = self.client.session
        self.assertNotIn("order_id", session)
        self.assertNotIn("payment_data", session)
        self.assertEqual(session["combined_order_id"], self.combined_order.pk)
        self.assertIn("Payment Failed", self.message_texts(resp))

    def test_cancel_resolves_order_from_request(self):
        EpsTransaction.objects.create(
            merchant_transaction_id="TXN3", combined_order=self.combined_order, amount=Decimal("1500.00"),
            status=EpsTransaction.REDIRECTED,
        )
        resp = self.client.get(
            reverse("payments:eps_cancel"),
            {"CustomerOrderId": str(self.combined_order.pk), "merchantTransactionId": "TXN3"},
        )
        self.assertRedirects(resp, reverse("home"), fetch_redirect_response=False)
        self.assertEqual(self.statuses(), ["cancelled"] * 3)
        self.assertEqual(EpsTransaction.objects.get().status, EpsTransaction.CANCELLED)
        self.assertIn("Payment cancelled", self.message_texts(resp))

    def test_session_keys_cleared_without_order(self):
        for name in ("payments:eps_fail", "payments:eps_cancel"):
            self.set_session(order_id=5, payment_data={"a": 1})
            with self.assertLogs("payments.views", level="WARNING"):
                resp = self.client.post(reverse(name), {"customerOrderId": "not-a-number"})
            self.assertRedirects(resp, reverse("home"), fetch_redirect_response=False)
            session = self.client.session
            self.assertNotIn("order_id", session)
            self.assertNotIn("payment_data", session)
        self.assertEqual(self.statuses(), ["pending"] * 3)

    def test_cancel_after_fail_keeps_failed(self):
        self.set_session(combined_order_id=self.combined_order.pk)
        self.client.post(reverse("payments:eps_fail"))
        self.client.post(reverse("payments:eps_cancel"))
        self.assertEqual(self.statuses(), ["failed"] * 3)

    def test_callbacks_accept_cross_site_posts(self):
        from django.test import Client
        client = Client(enforce_csrf_checks=True)
        resp = client.post(reverse("payments:eps_fail"))
        self.assertEqual(resp.status_code, 302)
