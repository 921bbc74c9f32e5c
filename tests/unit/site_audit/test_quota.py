"""
Test quota gate
"""
import pytest

from site_audit.quota import SITE_AUDITS, DatabaseQuotaGate, UnlimitedQuotaGate, build_usage
from site_audit.types import DeviceType


class TestBuildUsage:
    def test_limited(self):
        usage = build_usage(3, 10)

        assert usage.remaining == 7
        assert usage.is_limit_reached is False
        assert usage.percent_used == 30

    def test_limit_reached(self):
        usage = build_usage(10, 10)

        assert usage.remaining == 0
        assert usage.is_limit_reached is True
        assert usage.percent_used == 100

    def test_unlimited(self):
        usage = build_usage(5, None)

        assert usage.limit is None
        assert usage.remaining is None
        assert usage.is_limit_reached is False

    def test_zero_limit_blocks(self):
        usage = build_usage(0, 0)

        assert usage.is_limit_reached is True


class TestDatabaseQuotaGate:
    def test_allows_under_limit(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 2)
        store.create("site-1", DeviceType.DESKTOP, account_id="acct-1")

        check = gate.check_quota("acct-1", SITE_AUDITS)

        assert check.allowed is True
        assert check.usage.used == 1

    def test_denies_at_limit(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 2)
        store.create("site-1", DeviceType.DESKTOP, account_id="acct-1")
        store.create("site-1", DeviceType.MOBILE, account_id="acct-1")

        check = gate.check_quota("acct-1", SITE_AUDITS)

        assert check.allowed is False
        assert check.usage.is_limit_reached is True

    def test_failed_audits_are_free(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 1)
        record = store.create("site-1", DeviceType.DESKTOP, account_id="acct-1")
        store.fail(record.id, "NO_SITEMAP", [])

        assert gate.check_quota("acct-1", SITE_AUDITS).allowed is True

    def test_other_accounts_do_not_count(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 1)
        store.create("site-1", DeviceType.DESKTOP, account_id="acct-2")

        assert gate.check_quota("acct-1", SITE_AUDITS).allowed is True

    def test_unlimited_account(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: None)
        for _ in range(3):
            store.create("site-1", DeviceType.DESKTOP, account_id="acct-1")

        assert gate.check_quota("acct-1", SITE_AUDITS).allowed is True

    def test_unmetered_resource(self, store):
        gate = DatabaseQuotaGate(store, limit_lookup=lambda account: 0)

        assert gate.check_quota("acct-1", "reports").allowed is True

    def test_default_limits_come_from_settings(self, store):
        gate = DatabaseQuotaGate(store)

        check = gate.check_quota("acct-1", SITE_AUDITS)

        assert check.usage.limit == 10


class TestUnlimitedQuotaGate:
    @pytest.mark.parametrize("resource", [SITE_AUDITS, "anything"])
    def test_always_allows(self, resource):
        assert UnlimitedQuotaGate().check_quota("acct", resource).allowed is True
