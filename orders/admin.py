from django.contrib import admin

from .models import CombinedOrder, Order


class OrderInline(admin.TabularInline):
    model = Order
    extra = 0
    fields = ("grand_total", "payment_status", "payment_type", "notified")
    readonly_fields = ("payment_status", "payment_type", "notified")


@admin.register(CombinedOrder)
class CombinedOrderAdmin(admin.ModelAdmin):
    list_display = ("id", "grand_total", "created_at")
    readonly_fields = ("created_at", "updated_at")
    inlines = [OrderInline]
    ordering = ("-created_at",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "combined_order", "grand_total", "payment_status", "payment_type", "notified", "updated_at")
    list_filter = ("payment_status", "payment_type", "notified")
    search_fields = ("id", "combined_order__id")
    readonly_fields = ("payment_details", "created_at", "updated_at")
