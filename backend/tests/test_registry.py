import pytest

from marketsync.adapters.amazon import AmazonAdapter
from marketsync.adapters.registry import AdapterRegistry, missing_credentials, registry, supported_marketplaces
from marketsync.errors import ValidationError
from marketsync.models_sqlalchemy.models import MarketplaceConnection, MarketplaceKind
from marketsync.utils.crypto import encrypt_credentials


def _connection(marketplace, credentials):
    return MarketplaceConnection(
        shop_id="shop",
        marketplace=marketplace,
        credentials=encrypt_credentials(credentials),
    )


def test_builds_adapter_for_connection_kind():
    adapter = registry.create(_connection(MarketplaceKind.amazon, {
        "seller_id": "SELLER1",
        "refresh_token": "Atzr|token",
        "client_id": "client",
        "client_secret": "secret",
    }))

    assert isinstance(adapter, AmazonAdapter)
    assert adapter.seller_id == "SELLER1"


def test_unsupported_kinds_are_validation_errors():
    with pytest.raises(ValidationError) as exc_info:
        registry.get(MarketplaceKind.target)
    assert exc_info.value.message == "Target Plus integration not yet supported"
    assert exc_info.value.code == "unsupported_marketplace"

    with pytest.raises(ValidationError):
        registry.get(MarketplaceKind.other)


def test_missing_credentials_are_named():
    assert missing_credentials(MarketplaceKind.ebay, {"client_id": "x"}) == ["client_secret", "refresh_token"]

    with pytest.raises(ValidationError) as exc_info:
        registry.create(_connection(MarketplaceKind.walmart, {"client_id": "x"}))
    assert exc_info.value.message == "Missing required credentials: client_secret"


def test_unreadable_credentials_are_rejected():
    connection = MarketplaceConnection(shop_id="shop", marketplace=MarketplaceKind.ebay, credentials="ENC:v1:garbage")
    with pytest.raises(ValidationError):
        registry.create(connection)


def test_duplicate_registration_is_refused():
    local = AdapterRegistry()
    local.register("amazon", AmazonAdapter)
    with pytest.raises(ValueError):
        local.register(MarketplaceKind.amazon, AmazonAdapter)
    assert local.supported() == ["amazon"]


def test_supported_marketplaces_flags_availability():
    available = {m["id"]: m["available"] for m in supported_marketplaces()}
    assert available == {"amazon": True, "ebay": True, "walmart": True, "target": False, "etsy": True}
