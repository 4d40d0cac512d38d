"""
Unit Tests for the Ledger Service

Tests cover:
1. Grant recording and validation
2. Spend execution
3. All-or-nothing writes
4. Balance reporting
5. Concurrent spends
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from points.errors import InsufficientBalanceError, StorageError, ValidationError
from points.service import LedgerService
from points.storage import InMemoryLedgerStore


def _seeded_service() -> LedgerService:
    service = LedgerService(InMemoryLedgerStore())
    service.record_grant("DANNON", 300, "2020-10-31T10:00:00Z")
    service.record_grant("UNILEVER", 200, "2020-10-31T11:00:00Z")
    service.record_grant("DANNON", 10000, "2020-11-01T14:00:00Z")
    service.record_grant("MILLER COORS", 10000, "2020-11-01T09:00:00Z")
    return service


class FailingStore(InMemoryLedgerStore):
    """Fails the nth update to simulate a storage fault mid-spend."""

    def __init__(self, fail_on_update: int):
        super().__init__()
        self.fail_on_update = fail_on_update
        self.updates = 0

    def update_points(self, grant_id: int, new_points: int) -> None:
        self.updates += 1
        if self.updates == self.fail_on_update:
            raise StorageError("disk full")
        super().update_points(grant_id, new_points)


class TestRecordGrant:
    """Tests for recording grants."""

    def test_record_grant_returns_id_and_updates_balance(self):
        """Test that a recorded grant shows up in the payer's balance."""
        service = LedgerService(InMemoryLedgerStore())

        grant_id = service.record_grant("DANNON", 1000, "2020-11-02T14:00:00Z")

        assert grant_id == 1
        assert service.get_balance() == {"DANNON": 1000}

    def test_record_grant_normalizes_timestamp_to_utc(self):
        """Test that offsets and naive timestamps are stored as UTC."""
        store = InMemoryLedgerStore()
        service = LedgerService(store)

        service.record_grant("DANNON", 10, "2020-11-02T09:00:00-05:00")
        service.record_grant("UNILEVER", 10, "2020-11-02T14:00:00")

        first, second = store.get_all_ordered_by_timestamp()
        assert first.timestamp == datetime(2020, 11, 2, 14, tzinfo=timezone.utc)
        assert second.timestamp == first.timestamp

    @pytest.mark.parametrize(
        "payer, points, timestamp, field, message",
        [
            (None, 100, "2020-11-02T14:00:00Z", "payer", "You must specify a payer!"),
            ("", 100, "2020-11-02T14:00:00Z", "payer", "You must specify a payer!"),
            ("DANNON", None, "2020-11-02T14:00:00Z", "points", "You must specify points to add!"),
            ("DANNON", 0, "2020-11-02T14:00:00Z", "points", "points must be a positive integer!"),
            ("DANNON", -200, "2020-11-02T14:00:00Z", "points", "points must be a positive integer!"),
            ("DANNON", "100", "2020-11-02T14:00:00Z", "points", "points must be a positive integer!"),
            ("DANNON", 10.5, "2020-11-02T14:00:00Z", "points", "points must be a positive integer!"),
            ("DANNON", 100, None, "timestamp", "You must specify a timestamp!"),
            ("DANNON", 100, "yesterday", "timestamp", "timestamp must be an ISO-8601 date-time!"),
            ("DANNON", 100, 1604325600, "timestamp", "timestamp must be an ISO-8601 date-time!"),
            ("DANNON", 100, "1604325600", "timestamp", "timestamp must be an ISO-8601 date-time!"),
            ("DANNON", 100, "1604325600.5", "timestamp", "timestamp must be an ISO-8601 date-time!"),
            ("DANNON", 100, "2020-11-02", "timestamp", "timestamp must be an ISO-8601 date-time!"),
            ("DANNON", 2**63, "2020-11-02T14:00:00Z", "points", "points must be a positive integer!"),
        ],
    )
    def test_invalid_grant_is_rejected_before_storage(self, payer, points, timestamp, field, message):
        """Test that each malformed field is reported and nothing is stored."""
        store = InMemoryLedgerStore()
        service = LedgerService(store)

        with pytest.raises(ValidationError) as exc_info:
            service.record_grant(payer, points, timestamp)

        assert exc_info.value.field == field
        assert exc_info.value.message == message
        assert store.grants == {}

    def test_payer_is_stored_as_given(self):
        """Test that payers differing only by whitespace stay separate."""
        service = LedgerService(InMemoryLedgerStore())

        service.record_grant(" DANNON ", 10, "2020-11-02T14:00:00Z")
        service.record_grant("DANNON", 20, "2020-11-02T15:00:00Z")

        assert service.get_balance() == {" DANNON ": 10, "DANNON": 20}

    def test_first_missing_field_is_reported(self):
        """Test that payer is checked before points and timestamp."""
        service = LedgerService(InMemoryLedgerStore())

        with pytest.raises(ValidationError) as exc_info:
            service.record_grant(None, None, None)

        assert exc_info.value.field == "payer"


class TestSpend:
    """Tests for spend execution."""

    def test_spend_applies_oldest_first_plan(self):
        """Test the classic spend of 5000 and the balances it leaves."""
        service = _seeded_service()

        result = service.spend(5000)

        assert [p.model_dump() for p in result] == [
            {"payer": "DANNON", "points": -300},
            {"payer": "UNILEVER", "points": -200},
            {"payer": "MILLER COORS", "points": -4500},
        ]
        assert service.get_balance() == {"DANNON": 10000, "UNILEVER": 0, "MILLER COORS": 5500}

    def test_consecutive_spends_continue_from_remaining_points(self):
        """Test that a second spend picks up where the first stopped."""
        service = _seeded_service()
        service.spend(400)

        result = service.spend(200)

        assert [p.model_dump() for p in result] == [
            {"payer": "UNILEVER", "points": -100},
            {"payer": "MILLER COORS", "points": -100},
        ]

    def test_overspend_leaves_ledger_unchanged(self):
        """Test that an insufficient balance mutates nothing."""
        service = LedgerService(InMemoryLedgerStore())
        service.record_grant("DANNON", 100, "2020-11-02T14:00:00Z")

        with pytest.raises(InsufficientBalanceError):
            service.spend(150)

        assert service.get_balance() == {"DANNON": 100}

    def test_spend_everything_zeroes_all_payers(self):
        """Test spending exactly the total balance."""
        service = _seeded_service()

        result = service.spend(20500)

        assert -sum(p.points for p in result) == 20500
        assert service.get_balance() == {"DANNON": 0, "UNILEVER": 0, "MILLER COORS": 0}

    @pytest.mark.parametrize(
        "points, message",
        [
            (None, "You must specify points to spend!"),
            (0, "points must be a positive integer!"),
            (-10, "points must be a positive integer!"),
            (False, "points must be a positive integer!"),
        ],
    )
    def test_invalid_spend_is_rejected(self, points, message):
        """Test spend request validation."""
        service = _seeded_service()

        with pytest.raises(ValidationError) as exc_info:
            service.spend(points)

        assert exc_info.value.field == "points"
        assert exc_info.value.message == message


class TestAtomicSpend:
    """Tests for all-or-nothing spend writes."""

    def test_storage_failure_mid_spend_rolls_back(self):
        """Test that a failed second update leaves the first one undone."""
        store = FailingStore(fail_on_update=2)
        service = LedgerService(store)
        service.record_grant("DANNON", 300, "2020-10-31T10:00:00Z")
        service.record_grant("UNILEVER", 200, "2020-10-31T11:00:00Z")

        with pytest.raises(StorageError):
            service.spend(400)

        assert [g.points for g in store.get_all_ordered_by_timestamp()] == [300, 200]
        assert service.get_balance() == {"DANNON": 300, "UNILEVER": 200}


class TestConcurrentSpends:
    """Tests for serialized spends."""

    def test_parallel_spends_never_overdraw(self):
        """Test that racing spends cannot consume the same points twice."""
        service = LedgerService(InMemoryLedgerStore())
        service.record_grant("DANNON", 100, "2020-11-02T14:00:00Z")

        def attempt():
            try:
                service.spend(15)
                return True
            except InsufficientBalanceError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: attempt(), range(10)))

        assert results.count(True) == 6
        assert service.get_balance() == {"DANNON": 10}


class TestBalance:
    """Tests for balance reporting."""

    def test_empty_ledger_has_empty_balance(self):
        """Test balance on an empty ledger."""
        assert LedgerService(InMemoryLedgerStore()).get_balance() == {}

    def test_balance_is_repeatable(self):
        """Test that reading the balance does not change it."""
        service = _seeded_service()

        assert service.get_balance() == service.get_balance()
        assert service.get_balance() == {"DANNON": 10300, "UNILEVER": 200, "MILLER COORS": 10000}
