"""
Tests for the PostgreSQL ledger store's statements and advisory lock.
Sessions and connections are faked; statements are compiled with the
PostgreSQL dialect and checked for their compare-and-set predicates.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from conftest import NOW
from mealfund.ledger.sql import SqlLedgerStore, _advisory_key
from mealfund.models.enums import DeliveryStatus, EscrowStatus, IssueSeverity, IssueStatus
from mealfund.models.tables import Delivery, School
from mealfund.schemas.records import DeliveryRecord


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def scalars(self):
        return self

    def first(self):
        return self._rows[0] if self._rows else None

    def all(self):
        return list(self._rows)


class FakeSession:
    def __init__(self, owner):
        self.owner = owner

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt, params=None):
        self.owner.statements.append(stmt)
        return FakeResult(self.owner.rows)

    async def get(self, model, key):
        return self.owner.existing.get((model, key))

    def add(self, row):
        self.owner.added.append(row)

    async def commit(self):
        self.owner.commits += 1


class FakeSessionFactory:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.existing = {}
        self.statements = []
        self.added = []
        self.commits = 0

    def __call__(self):
        return FakeSession(self)


class FakeConnection:
    def __init__(self, log):
        self.log = log

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.log.append(("close", None))
        return False

    async def execute(self, stmt, params=None):
        self.log.append((str(stmt), params))

    async def commit(self):
        self.log.append(("commit", None))


class FakeEngine:
    def __init__(self):
        self.log = []

    def connect(self):
        return FakeConnection(self.log)


def compiled(stmt):
    return stmt.compile(dialect=postgresql.dialect())


def delivery_row(status="scheduled"):
    return Delivery(
        delivery_id="7d1f0c2e-2a55-4c43-9a8e-3f0d9f1b6a10",
        school_id="school-1",
        catering_id="catering-1",
        delivery_date=NOW.date(),
        portions=100,
        amount=Decimal("1500000"),
        status=status,
        created_at=NOW,
        updated_at=NOW,
    )


class TestAdvisoryLock:

    def test_key_is_stable_signed_64_bit(self):
        key = _advisory_key("d1")
        assert key == _advisory_key("d1")
        assert key != _advisory_key("d2")
        assert -(2 ** 63) <= key < 2 ** 63

    def test_lock_and_unlock_same_key(self):
        engine = FakeEngine()
        store = SqlLedgerStore(engine, FakeSessionFactory())

        async def body():
            async with store.lock_delivery("d1"):
                engine.log.append(("body", None))

        asyncio.run(body())

        sql = [entry[0] for entry in engine.log]
        assert "pg_advisory_lock" in sql[0]
        assert sql[1] == "body"
        assert "pg_advisory_unlock" in sql[2]
        assert engine.log[0][1] == engine.log[2][1] == {"k": _advisory_key("d1")}

    def test_unlock_runs_when_body_raises(self):
        engine = FakeEngine()
        store = SqlLedgerStore(engine, FakeSessionFactory())

        async def body():
            async with store.lock_delivery("d1"):
                raise RuntimeError("rail down")

        with pytest.raises(RuntimeError):
            asyncio.run(body())

        assert any("pg_advisory_unlock" in entry[0] for entry in engine.log)


class TestCompareAndSet:

    def test_delivery_cas_guards_on_expected_status(self):
        factory = FakeSessionFactory(rows=[delivery_row()])
        store = SqlLedgerStore(FakeEngine(), factory)

        updated = asyncio.run(store.cas_delivery_status(
            "7d1f0c2e-2a55-4c43-9a8e-3f0d9f1b6a10", DeliveryStatus.PENDING, DeliveryStatus.SCHEDULED,
            updated_at=NOW,
        ))

        assert updated.status == DeliveryStatus.SCHEDULED
        assert factory.commits == 1
        stmt = compiled(factory.statements[0])
        sql = str(stmt)
        assert sql.startswith("UPDATE deliveries SET")
        assert "deliveries.status = " in sql
        assert "RETURNING" in sql
        assert "pending" in stmt.params.values()
        assert "scheduled" in stmt.params.values()

    def test_lost_race_returns_none(self):
        factory = FakeSessionFactory(rows=[])
        store = SqlLedgerStore(FakeEngine(), factory)

        result = asyncio.run(store.cas_delivery_status(
            "7d1f0c2e-2a55-4c43-9a8e-3f0d9f1b6a10", DeliveryStatus.PENDING, DeliveryStatus.SCHEDULED,
        ))
        assert result is None

    def test_escrow_cas_matches_any_expected_status(self):
        factory = FakeSessionFactory(rows=[])
        store = SqlLedgerStore(FakeEngine(), factory)

        asyncio.run(store.cas_escrow_status(
            "d1", {EscrowStatus.LOCKED, EscrowStatus.DISPUTED}, EscrowStatus.RELEASED, released_at=NOW,
        ))

        stmt = compiled(factory.statements[0])
        assert "escrow_transactions.status IN" in str(stmt)
        expected = next(v for v in stmt.params.values() if isinstance(v, list))
        assert set(expected) == {"locked", "disputed"}
        assert stmt.params["status"] == "released"
        assert stmt.params["released_at"] == NOW

    def test_issue_cas_checks_status_and_severity(self):
        factory = FakeSessionFactory(rows=[])
        store = SqlLedgerStore(FakeEngine(), factory)

        asyncio.run(store.cas_issue(
            "i1", IssueStatus.OPEN, IssueSeverity.HIGH, status=IssueStatus.RESOLVED,
        ))

        stmt = compiled(factory.statements[0])
        sql = str(stmt)
        assert "issues.status = " in sql
        assert "issues.severity = " in sql
        assert "open" in stmt.params.values()
        assert "high" in stmt.params.values()
        assert stmt.params["status"] == "resolved"


class TestInsertDelivery:

    def test_registers_unknown_school(self):
        factory = FakeSessionFactory()
        store = SqlLedgerStore(FakeEngine(), factory)
        record = DeliveryRecord.model_validate(delivery_row("pending"))

        asyncio.run(store.insert_delivery(record))

        assert [type(row) for row in factory.added] == [School, Delivery]
        assert factory.added[0].school_id == "school-1"
        assert factory.added[1].status == "pending"

    def test_known_school_not_added_again(self):
        factory = FakeSessionFactory()
        factory.existing[(School, "school-1")] = School(school_id="school-1")
        store = SqlLedgerStore(FakeEngine(), factory)
        record = DeliveryRecord.model_validate(delivery_row("pending"))

        asyncio.run(store.insert_delivery(record))

        assert [type(row) for row in factory.added] == [Delivery]
