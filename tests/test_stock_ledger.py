"""Tests for the catalog stock ledger."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from marketcore.catalog import ProductCache
from marketcore.errors import InsufficientStockError, NotFoundError, ValidationError
from marketcore.notifications import LOW_INVENTORY, OUT_OF_STOCK


class TestReserveStock:
    def test_decrements_and_returns_remaining(self, services, stock_of):
        assert services.ledger.reserve_stock("prod-1", 4) == 6
        assert stock_of("prod-1") == 6

    def test_insufficient_stock_leaves_quantity_unchanged(self, services, stock_of):
        with pytest.raises(InsufficientStockError) as exc_info:
            services.ledger.reserve_stock("prod-2", 6)

        assert exc_info.value.available == 5
        assert stock_of("prod-2") == 5

    def test_exact_quantity_reaches_zero(self, services, stock_of):
        assert services.ledger.reserve_stock("prod-2", 5) == 0
        assert stock_of("prod-2") == 0

    def test_inactive_product_rejected(self, services, stock_of):
        with pytest.raises(InsufficientStockError):
            services.ledger.reserve_stock("prod-4", 1)
        assert stock_of("prod-4") == 7

    def test_missing_product_rejected(self, services):
        with pytest.raises(InsufficientStockError) as exc_info:
            services.ledger.reserve_stock("nope", 1)
        assert exc_info.value.available is None

    @pytest.mark.parametrize("qty", [0, -3])
    def test_non_positive_quantity_rejected(self, services, qty):
        with pytest.raises(ValidationError):
            services.ledger.reserve_stock("prod-1", qty)

    def test_concurrent_reservations_never_oversell(self, services, stock_of):
        def attempt(_):
            try:
                services.ledger.reserve_stock("prod-1", 1)
                return True
            except InsufficientStockError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(25)))

        assert results.count(True) == 10
        assert stock_of("prod-1") == 0

    def test_reservation_refreshes_cached_product(self, services):
        assert services.catalog.get_product("prod-3").quantity_available == 100
        services.ledger.reserve_stock("prod-3", 1)
        assert services.catalog.get_product("prod-3").quantity_available == 99


class TestStockNotifications:
    def test_low_inventory_notifies_seller(self, services):
        services.ledger.reserve_stock("prod-2", 2)  # threshold is 3 in tests

        kinds = [n.kind for n in services.notifier.list_for("seller-b")]
        assert kinds == [LOW_INVENTORY]

    def test_out_of_stock_notifies_seller(self, services):
        services.ledger.reserve_stock("prod-2", 5)

        notes = services.notifier.list_for("seller-b")
        assert [n.kind for n in notes] == [OUT_OF_STOCK]
        assert notes[0].data == {"productId": "prod-2"}

    def test_healthy_stock_is_silent(self, services):
        services.ledger.reserve_stock("prod-3", 1)
        assert services.notifier.list_for("seller-a") == []


class TestRestoreStock:
    def test_increments(self, services, stock_of):
        services.ledger.reserve_stock("prod-1", 3)
        assert services.ledger.restore_stock("prod-1", 3) == 10
        assert stock_of("prod-1") == 10

    def test_missing_product(self, services):
        with pytest.raises(NotFoundError):
            services.ledger.restore_stock("nope", 1)


class TestProductCache:
    def test_entries_expire(self, products):
        now = [0.0]
        cache = ProductCache(ttl_seconds=60, clock=lambda: now[0])
        cache.put(products["p1"])

        now[0] = 59.0
        assert cache.get("prod-1") is products["p1"]
        now[0] = 60.0
        assert cache.get("prod-1") is None
