from django.shortcuts import render

from orders.models import CombinedOrder


def home_view(request):
    return render(request, "storefront/home.html")


def checkout_view(request):
    combined_order = None
    pk = request.session.get("combined_order_id")
    if pk:
        combined_order = CombinedOrder.objects.filter(pk=pk).first()
    return render(request, "storefront/checkout.html", {"combined_order": combined_order})


def order_confirmed_view(request):
    """Landing page after a verified payment; reads the order the success callback put in session."""
    combined_order = None
    pk = request.session.get("combined_order_id")
    if pk:
        combined_order = CombinedOrder.objects.prefetch_related("orders").filter(pk=pk).first()
    return render(request, "storefront/order_confirmed.html", {"combined_order": combined_order})
