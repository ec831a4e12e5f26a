from django.db import models


class EpsTransaction(models.Model):
    """One payment attempt sent to EPS."""
    CREATED = "created"
    REDIRECTED = "redirected"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STATUS = [
        (CREATED, "Created"),
        (REDIRECTED, "Redirected"),
        (PAID, "Paid"),
        (FAILED, "Failed"),
        (CANCELLED, "Cancelled"),
    ]

    merchant_transaction_id = models.CharField(max_length=64, unique=True, db_index=True)
    combined_order = models.ForeignKey(
        "orders.CombinedOrder", on_delete=models.PROTECT, related_name="eps_transactions"
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=STATUS, default=CREATED, db_index=True)

    raw_req = models.JSONField(blank=True, null=True)
    raw_resp = models.JSONField(blank=True, null=True)
    verification = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.merchant_transaction_id} ({self.status})"
