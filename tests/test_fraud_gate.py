"""Tests for the order velocity gate."""

from datetime import timedelta

import pytest

from marketcore.errors import RateExceededError
from marketcore.fraud_gate import FraudGate, InMemoryVelocityStore


@pytest.fixture
def gate(clock):
    return FraudGate(clock=clock)


class TestIpWindow:
    def test_eleventh_order_from_ip_rejected(self, gate):
        for n in range(10):
            gate.check_and_record("1.2.3.4", f"user-{n}")

        with pytest.raises(RateExceededError) as exc_info:
            gate.check_and_record("1.2.3.4", "user-new")

        assert exc_info.value.scope == "ip"
        assert exc_info.value.message == "Too many orders from this IP address"

    def test_entries_older_than_window_do_not_count(self, gate, clock):
        for n in range(10):
            gate.check_and_record("1.2.3.4", f"user-{n}")

        clock.advance(hours=25)
        gate.check_and_record("1.2.3.4", "user-new")

    def test_other_ips_unaffected(self, gate):
        for n in range(10):
            gate.check_and_record("1.2.3.4", f"user-{n}")
        gate.check_and_record("5.6.7.8", "user-x")


class TestUserWindow:
    def test_sixth_order_within_an_hour_rejected(self, gate, clock):
        for n in range(5):
            gate.check_and_record(f"10.0.0.{n}", "buyer-1")
            clock.advance(minutes=5)

        with pytest.raises(RateExceededError) as exc_info:
            gate.check_and_record("10.0.0.99", "buyer-1")

        assert exc_info.value.scope == "user"
        assert exc_info.value.message == "Too many orders in a short time period"

    def test_window_slides(self, gate, clock):
        for n in range(5):
            gate.check_and_record(f"10.0.0.{n}", "buyer-1")

        clock.advance(hours=1)
        gate.check_and_record("10.0.0.99", "buyer-1")


class TestRejection:
    def test_rejected_attempt_is_not_recorded(self, clock):
        store = InMemoryVelocityStore()
        gate = FraudGate(store, user_limit=1, clock=clock)
        gate.check_and_record("1.1.1.1", "buyer-1")

        with pytest.raises(RateExceededError):
            gate.check_and_record("2.2.2.2", "buyer-1")

        since = clock() - timedelta(days=1)
        assert store.query("ip:2.2.2.2", since) == []
        assert len(store.query("user:buyer-1", since)) == 1

    def test_custom_limits(self, clock):
        gate = FraudGate(ip_limit=2, ip_window=timedelta(minutes=10), clock=clock)
        gate.check_and_record("1.1.1.1", "a")
        gate.check_and_record("1.1.1.1", "b")

        with pytest.raises(RateExceededError):
            gate.check_and_record("1.1.1.1", "c")

        clock.advance(minutes=10)
        gate.check_and_record("1.1.1.1", "c")
