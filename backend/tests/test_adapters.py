import json
from decimal import Decimal

import httpx
import pytest

from marketsync.adapters.amazon import AmazonAdapter
from marketsync.adapters.ebay import EbayAdapter
from marketsync.adapters.etsy import EtsyAdapter, etsy_money
from marketsync.adapters.types import OrderQuery, PageOptions, ProductSnapshot
from marketsync.adapters.walmart import WalmartAdapter, extract_walmart_error
from marketsync.errors import AuthError, NonRetryableRemoteError, TransientRemoteError, ValidationError
from marketsync.models_sqlalchemy.models import OrderStatus

from conftest import Recorder


def _transport(recorder):
    return httpx.MockTransport(recorder)


AMAZON_CREDS = {
    "seller_id": "SELLER1",
    "refresh_token": "Atzr|token",
    "client_id": "client",
    "client_secret": "secret",
}
AMAZON_TOKEN = ("POST", "/auth/o2/token")
AMAZON_ITEM = "/listings/2021-08-01/items/SELLER1/SKU-1"


def _snapshot(**overrides):
    data = dict(
        source_product_id="P1",
        title="Blue Mug",
        sku="SKU-1",
        price=Decimal("19.99"),
        inventory_quantity=4,
        vendor="Acme",
        tags=["mugs"],
    )
    data.update(overrides)
    return ProductSnapshot(**data)


@pytest.mark.asyncio
async def test_amazon_caches_access_token():
    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}),
        ("PATCH", AMAZON_ITEM): httpx.Response(200, json={"status": "ACCEPTED"}),
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    await adapter.update_inventory("SKU-1", 3)
    await adapter.update_price("SKU-1", Decimal("12.50"))

    assert recorder.paths("POST").count("/auth/o2/token") == 1
    patches = [r for r in recorder.requests if r.method == "PATCH"]
    assert all(r.headers["x-amz-access-token"] == "tok-1" for r in patches)
    body = json.loads(patches[0].content)
    assert body["patches"][0]["path"] == "/attributes/fulfillment_availability"
    assert body["patches"][0]["value"][0]["quantity"] == 3


@pytest.mark.asyncio
async def test_amazon_invalid_grant_is_an_auth_error():
    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "The request has an invalid grant parameter"}
        ),
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    with pytest.raises(AuthError) as exc_info:
        await adapter.delete_listing("SKU-1")
    assert exc_info.value.message == "The request has an invalid grant parameter"


@pytest.mark.asyncio
async def test_amazon_throttling_is_retryable_with_retry_after():
    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}),
        ("PATCH", AMAZON_ITEM): httpx.Response(
            429, headers={"Retry-After": "12"}, json={"errors": [{"code": "QuotaExceeded", "message": "You exceeded your quota"}]}
        ),
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    with pytest.raises(TransientRemoteError) as exc_info:
        await adapter.update_price("SKU-1", Decimal("10"))
    assert exc_info.value.retry_after == 12.0
    assert exc_info.value.retryable is True
    assert exc_info.value.message == "You exceeded your quota"


@pytest.mark.asyncio
async def test_amazon_invalid_submission_keeps_marketplace_message():
    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}),
        ("PUT", AMAZON_ITEM): httpx.Response(
            200, json={"status": "INVALID", "issues": [{"message": "'brand' is required"}, {"message": "bad UPC"}]}
        ),
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    with pytest.raises(NonRetryableRemoteError) as exc_info:
        await adapter.create_listing(_snapshot())
    assert exc_info.value.message == "'brand' is required; bad UPC"


@pytest.mark.asyncio
async def test_negative_quantity_is_rejected_before_any_request():
    recorder = Recorder({})
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    with pytest.raises(ValidationError):
        await adapter.update_inventory("SKU-1", -1)
    with pytest.raises(ValidationError):
        await adapter.update_price("SKU-1", Decimal("-0.01"))
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_amazon_test_connection_reports_rejected_credentials():
    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}),
        ("GET", "/sellers/v1/marketplaceParticipations"): httpx.Response(
            403, json={"errors": [{"code": "Unauthorized", "message": "Access to requested resource is denied."}]}
        ),
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    result = await adapter.test_connection()

    assert result.success is False
    assert result.message == "Access to requested resource is denied."


@pytest.mark.asyncio
async def test_amazon_list_orders_maps_status_and_cursor():
    def orders(request):
        assert request.url.params["NextToken"] == "abc"
        return httpx.Response(200, json={"payload": {
            "NextToken": "def",
            "Orders": [{
                "AmazonOrderId": "111-222",
                "OrderStatus": "Unshipped",
                "OrderTotal": {"CurrencyCode": "USD", "Amount": "31.50"},
                "PaymentMethod": "Other",
                "PurchaseDate": "2024-05-01T09:00:00Z",
                "LastUpdateDate": "2024-05-01T09:30:00Z",
                "ShippingAddress": {"Name": "Ada", "City": "London", "CountryCode": "GB"},
            }],
        }})

    recorder = Recorder({
        AMAZON_TOKEN: httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}),
        ("GET", "/orders/v0/orders"): orders,
    })
    adapter = AmazonAdapter(AMAZON_CREDS, transport=_transport(recorder))

    page = await adapter.list_orders(OrderQuery(cursor="abc"))

    assert page.page_info.has_next_page is True
    assert page.page_info.cursor == "def"
    order = page.orders[0]
    assert order.marketplace_order_id == "111-222"
    assert order.status == OrderStatus.processing
    assert order.total == Decimal("31.50")
    assert order.shipping_address.city == "London"


def test_amazon_status_and_carrier_fallbacks():
    assert AmazonAdapter.map_order_status("Shipped") == OrderStatus.shipped
    assert AmazonAdapter.map_order_status("SomethingNew") == OrderStatus.pending
    assert AmazonAdapter.map_carrier("FedEx") == "FEDEX"
    assert AmazonAdapter.map_carrier("Hermes") == "OTHER"


EBAY_CREDS = {"refresh_token": "v^1.1", "client_id": "app", "client_secret": "cert", "sandbox": True}
EBAY_TOKEN = ("POST", "/identity/v1/oauth2/token")


@pytest.mark.asyncio
async def test_ebay_create_listing_publishes_offer():
    recorder = Recorder({
        EBAY_TOKEN: httpx.Response(200, json={"access_token": "ebay-tok", "expires_in": 7200}),
        ("PUT", "/sell/inventory/v1/inventory_item/SKU-1"): httpx.Response(204),
        ("POST", "/sell/inventory/v1/offer"): httpx.Response(201, json={"offerId": "OFFER-9"}),
        ("POST", "/sell/inventory/v1/offer/OFFER-9/publish"): httpx.Response(200, json={"listingId": "1100"}),
    })
    adapter = EbayAdapter(EBAY_CREDS, transport=_transport(recorder))

    listing = await adapter.create_listing(_snapshot())

    assert listing.listing_id == "SKU-1"
    assert listing.raw == {"offer_id": "OFFER-9", "ebay_listing_id": "1100"}
    assert recorder.requests[0].headers["authorization"].startswith("Basic ")
    assert recorder.requests[1].headers["authorization"] == "Bearer ebay-tok"
    offer = json.loads(recorder.requests[2].content)
    assert offer["pricingSummary"]["price"] == {"value": "19.99", "currency": "USD"}
    assert offer["availableQuantity"] == 4


@pytest.mark.asyncio
async def test_ebay_rejection_message_is_verbatim():
    recorder = Recorder({
        EBAY_TOKEN: httpx.Response(200, json={"access_token": "ebay-tok", "expires_in": 7200}),
        ("PUT", "/sell/inventory/v1/inventory_item/SKU-1"): httpx.Response(
            400, json={"errors": [{"errorId": 25002, "message": "A user error has occurred. Invalid condition."}]}
        ),
    })
    adapter = EbayAdapter(EBAY_CREDS, transport=_transport(recorder))

    with pytest.raises(NonRetryableRemoteError) as exc_info:
        await adapter.create_listing(_snapshot())
    assert exc_info.value.message == "A user error has occurred. Invalid condition."
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_ebay_server_error_is_retryable():
    recorder = Recorder({
        EBAY_TOKEN: httpx.Response(200, json={"access_token": "ebay-tok", "expires_in": 7200}),
        ("GET", "/sell/inventory/v1/offer"): httpx.Response(503, text="Service Unavailable"),
    })
    adapter = EbayAdapter(EBAY_CREDS, transport=_transport(recorder))

    with pytest.raises(TransientRemoteError) as exc_info:
        await adapter.update_price("SKU-1", Decimal("5.00"))
    assert exc_info.value.message == "Service Unavailable"
    assert exc_info.value.retry_after is None


@pytest.mark.asyncio
async def test_ebay_listings_page_by_offset():
    def items(request):
        assert request.url.params["offset"] == "50"
        return httpx.Response(200, json={"total": 120, "inventoryItems": [{"sku": "A"}]})

    recorder = Recorder({
        EBAY_TOKEN: httpx.Response(200, json={"access_token": "ebay-tok", "expires_in": 7200}),
        ("GET", "/sell/inventory/v1/inventory_item"): items,
    })
    adapter = EbayAdapter(EBAY_CREDS, transport=_transport(recorder))

    page = await adapter.list_listings(PageOptions(cursor="50", limit=50))

    assert page.page_info.has_next_page is True
    assert page.page_info.cursor == "100"
    assert page.page_info.total == 120


def test_ebay_order_status_prefers_refund_and_cancel_signals():
    assert EbayAdapter.map_order_status({"orderFulfillmentStatus": "FULFILLED"}) == OrderStatus.shipped
    assert EbayAdapter.map_order_status({
        "orderFulfillmentStatus": "NOT_STARTED",
        "cancelStatus": {"cancelState": "CANCELED"},
    }) == OrderStatus.cancelled
    assert EbayAdapter.map_order_status({
        "orderFulfillmentStatus": "FULFILLED",
        "orderPaymentStatus": "FULLY_REFUNDED",
    }) == OrderStatus.refunded


WALMART_CREDS = {"client_id": "wm-id", "client_secret": "wm-secret"}
WALMART_TOKEN = ("POST", "/v3/token")


def test_walmart_error_extraction():
    body = {"errors": {"error": [{"code": "INVALID_REQUEST_CONTENT.GMP_INVENTORY_API", "description": "Invalid SKU"}]}}
    assert extract_walmart_error(body) == "Invalid SKU"
    assert extract_walmart_error({"message": "plain"}) == "plain"


@pytest.mark.asyncio
async def test_walmart_inventory_update_sends_service_headers():
    recorder = Recorder({
        WALMART_TOKEN: httpx.Response(200, json={"access_token": "wm-tok", "expires_in": 900}),
        ("PUT", "/v3/inventory"): httpx.Response(200, json={"sku": "SKU-1", "quantity": {"unit": "EACH", "amount": 7}}),
    })
    adapter = WalmartAdapter(WALMART_CREDS, transport=_transport(recorder))

    await adapter.update_inventory("SKU-1", 7)

    request = recorder.requests[-1]
    assert request.headers["wm_sec.access_token"] == "wm-tok"
    assert request.headers["wm_svc.name"] == "Walmart Marketplace"
    assert request.headers["wm_qos.correlation_id"]
    assert json.loads(request.content)["quantity"] == {"unit": "EACH", "amount": 7}


@pytest.mark.asyncio
async def test_walmart_create_listing_is_pending_until_feed_completes():
    recorder = Recorder({
        WALMART_TOKEN: httpx.Response(200, json={"access_token": "wm-tok", "expires_in": 900}),
        ("POST", "/v3/feeds"): httpx.Response(200, json={"feedId": "FEED-1"}),
    })
    adapter = WalmartAdapter(WALMART_CREDS, transport=_transport(recorder))

    listing = await adapter.create_listing(_snapshot())

    assert listing.listing_id == "SKU-1"
    assert listing.status == "pending"
    assert listing.raw == {"feed_id": "FEED-1"}


@pytest.mark.asyncio
async def test_walmart_nested_rejection_is_non_retryable():
    recorder = Recorder({
        WALMART_TOKEN: httpx.Response(200, json={"access_token": "wm-tok", "expires_in": 900}),
        ("PUT", "/v3/price"): httpx.Response(
            400, json={"errors": {"error": [{"code": "INVALID_REQUEST", "description": "Price is below the floor"}]}}
        ),
    })
    adapter = WalmartAdapter(WALMART_CREDS, transport=_transport(recorder))

    with pytest.raises(NonRetryableRemoteError) as exc_info:
        await adapter.update_price("SKU-1", Decimal("0.50"))
    assert exc_info.value.message == "Price is below the floor"


ETSY_CREDS = {"shop_id": "4242", "api_key": "key", "access_token": "etsy-tok"}


def test_etsy_money():
    assert etsy_money({"amount": 1999, "divisor": 100}) == Decimal("19.99")
    assert etsy_money(None) == Decimal("0")


@pytest.mark.asyncio
async def test_etsy_without_access_token_fails_before_io():
    recorder = Recorder({})
    adapter = EtsyAdapter({"shop_id": "4242", "api_key": "key"}, transport=_transport(recorder))

    with pytest.raises(AuthError):
        await adapter.delete_listing("1")
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_etsy_orders_are_receipts():
    recorder = Recorder({
        ("GET", "/v3/application/shops/4242/receipts"): httpx.Response(200, json={
            "count": 1,
            "results": [{
                "receipt_id": 987,
                "status": "Paid",
                "is_paid": True,
                "is_shipped": True,
                "grandtotal": {"amount": 2599, "divisor": 100, "currency_code": "EUR"},
                "create_timestamp": 1714554000,
                "update_timestamp": 1714557600,
                "transactions": [{"title": "Mug", "quantity": 1, "sku": "SKU-1", "price": {"amount": 2599, "divisor": 100}}],
            }],
        }),
    })
    adapter = EtsyAdapter(ETSY_CREDS, transport=_transport(recorder))

    page = await adapter.list_orders(OrderQuery())

    assert page.page_info.has_next_page is False
    order = page.orders[0]
    assert order.marketplace_order_id == "987"
    assert order.status == OrderStatus.shipped
    assert order.total == Decimal("25.99")
    assert order.currency == "EUR"
    assert recorder.requests[0].headers["x-api-key"] == "key"


@pytest.mark.asyncio
async def test_etsy_cancel_is_not_supported_remotely():
    adapter = EtsyAdapter(ETSY_CREDS, transport=_transport(Recorder({})))
    with pytest.raises(NonRetryableRemoteError):
        await adapter.cancel_order("987", "buyer asked")


ADAPTERS = [
    (AmazonAdapter, AMAZON_CREDS),
    (EbayAdapter, EBAY_CREDS),
    (WalmartAdapter, WALMART_CREDS),
    (EtsyAdapter, ETSY_CREDS),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("adapter_cls, credentials", ADAPTERS)
@pytest.mark.parametrize("overrides, message", [
    ({"inventory_quantity": -3}, "Quantity must not be negative, got -3"),
    ({"price": Decimal("-1.00")}, "Price must not be negative, got -1.00"),
])
async def test_create_listing_rejects_negative_snapshot(adapter_cls, credentials, overrides, message):
    recorder = Recorder({})
    adapter = adapter_cls(credentials, transport=_transport(recorder))

    with pytest.raises(ValidationError) as exc_info:
        await adapter.create_listing(_snapshot(**overrides))

    assert exc_info.value.message == message
    assert recorder.requests == []


@pytest.mark.parametrize("adapter_cls, credentials", ADAPTERS)
def test_order_without_id_is_a_rejected_payload(adapter_cls, credentials):
    adapter = adapter_cls(credentials, transport=_transport(Recorder({})))

    with pytest.raises(NonRetryableRemoteError) as exc_info:
        adapter.transform_order_from_marketplace({"status": "Shipped"})

    assert exc_info.value.code == "malformed_order"
    assert exc_info.value.marketplace == adapter.marketplace
    assert "status" in exc_info.value.message
