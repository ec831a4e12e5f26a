import json

from django.db import models


class CombinedOrder(models.Model):
    """Orders checked out and paid together."""
    shipping_address = models.JSONField(default=dict, blank=True)
    grand_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def shipping(self) -> dict:
        """Shipping address as a dict; older rows stored it as a JSON string."""
        value = self.shipping_address
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return {}
        return value if isinstance(value, dict) else {}

    def __str__(self):
        return f"CombinedOrder#{self.pk} ({self.grand_total})"


class Order(models.Model):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAYMENT_STATUS = [
        (PENDING, "Pending"),
        (PAID, "Paid"),
        (FAILED, "Failed"),
        (CANCELLED, "Cancelled"),
    ]

    combined_order = models.ForeignKey(CombinedOrder, on_delete=models.CASCADE, related_name="orders")
    grand_total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_status = models.CharField(max_length=16, choices=PAYMENT_STATUS, default=PENDING, db_index=True)
    payment_type = models.CharField(max_length=32, blank=True, default="")
    payment_details = models.JSONField(blank=True, null=True)  # last gateway response / callback payload
    notified = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PAID

    def __str__(self):
        return f"Order#{self.pk} ({self.payment_status})"
