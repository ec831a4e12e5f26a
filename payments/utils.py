import uuid
from datetime import datetime, timezone

# request key -> shipping_address keys tried in order
CUSTOMER_FIELDS = {
    "customerName": ("name", ("name",)),
    "customerEmail": ("email", ("email",)),
    "customerAddress": ("address", ("address",)),
    "customerCity": ("city_id", ("city", "city_id")),
    "customerState": ("state_id", ("state", "state_id")),
    "customerPostcode": ("postal_code", ("postal_code",)),
    "customerCountry": ("country_id", ("country", "country_id")),
    "customerPhone": ("phone", ("phone",)),
}


def generate_merchant_transaction_id() -> str:
    """UTC timestamp (14 chars) + 16 hex chars of a UUID4, uppercase."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{ts}{uuid.uuid4().hex[:16].upper()}"


def request_params(request) -> dict:
    params = request.GET.dict()
    params.update(request.POST.dict())
    return params


def customer_fields(request, combined_order) -> dict:
    """Customer details for the gateway: request input first, then the stored shipping address."""
    params = request_params(request)
    shipping = combined_order.shipping()
    fields = {}
    for target, (request_key, shipping_keys) in CUSTOMER_FIELDS.items():
        value = params.get(request_key)
        if not value:
            value = next((shipping[k] for k in shipping_keys if shipping.get(k)), None)
        fields[target] = value
    return fields
