from django.contrib import admin

from .models import EpsTransaction


@admin.register(EpsTransaction)
class EpsTransactionAdmin(admin.ModelAdmin):
    list_display = ("merchant_transaction_id", "combined_order", "status", "amount", "created_at", "updated_at")
    search_fields = ("merchant_transaction_id", "combined_order__id")
    list_filter = ("status", "created_at")
    readonly_fields = ("created_at", "updated_at", "raw_req", "raw_resp", "verification")
