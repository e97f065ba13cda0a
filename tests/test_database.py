"""Tests for the unit of work and the conditional repository writes."""

from datetime import datetime, timezone, timedelta

import pytest
from bson import ObjectId

from pymongo.errors import OperationFailure

from config import Settings, load_settings
from conftest import FakeSessionClient, InterceptingDatabase, stock_of
from database import Storage, UnitOfWork, create_document, oid, to_naive_utc
from errors import ConcurrentUpdate, InsufficientStockError, InvalidId, OrderNotFound
from repositories import Repositories
from services import build_services

WRITE_METHODS = {"insert_one", "update_one", "update_many", "delete_one", "find_one_and_update"}


@pytest.fixture
def storage(db):
    return Storage(db, transactional=False)


@pytest.fixture
def repos(db):
    return Repositories.from_db(db)


class TestUnitOfWork:
    def test_rollback_undoes_writes_newest_first(self, db, storage, repos, seed):
        with pytest.raises(RuntimeError):
            with storage.unit_of_work() as uow:
                create_document(db, "order", {"status": "pending", "user_id": seed["buyer_id"]}, uow)
                repos.products.decrement_stock(seed["laptop_id"], 2, uow)
                repos.products.increment_sold_count(seed["laptop_id"], 2, uow)
                raise RuntimeError("boom")

        assert db["order"].count_documents({}) == 0
        assert stock_of(db, seed["laptop_id"]) == 5
        assert db["product"].find_one({"_id": ObjectId(seed["laptop_id"])})["sold_count"] == 0

    def test_commit_keeps_writes(self, db, storage, repos, seed):
        with storage.unit_of_work() as uow:
            repos.products.decrement_stock(seed["laptop_id"], 2, uow)

        assert stock_of(db, seed["laptop_id"]) == 3

    def test_after_commit_runs_only_on_success(self, storage):
        calls = []
        with storage.unit_of_work() as uow:
            uow.after_commit(lambda: calls.append("committed"))
            assert calls == []
        assert calls == ["committed"]

        with pytest.raises(ValueError):
            with storage.unit_of_work() as uow:
                uow.after_commit(lambda: calls.append("rolled back"))
                raise ValueError()
        assert calls == ["committed"]

    def test_failing_after_commit_callback_does_not_stop_others(self):
        calls = []
        uow = UnitOfWork()
        with uow:
            uow.after_commit(lambda: 1 / 0)
            uow.after_commit(lambda: calls.append("second"))

        assert calls == ["second"]

    def test_without_client_is_never_transactional(self):
        assert UnitOfWork(None, transactional=True).transactional is False


class TestSessionTransactions:
    @pytest.fixture
    def client(self):
        return FakeSessionClient()

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def tx_services(self, db, settings, clock, client, calls):
        def record(name, method, args, kwargs):
            calls.append((name, kwargs.pop("session", None)))
            return method(*args, **kwargs)

        recording_db = InterceptingDatabase(db, record, client=client)
        return build_services(recording_db, settings.model_copy(update={"mongo_transactions": True}), clock=clock)

    def test_transactions_are_the_default(self, db, monkeypatch):
        monkeypatch.delenv("MONGO_TRANSACTIONS", raising=False)

        assert Settings().mongo_transactions is True
        assert load_settings().mongo_transactions is True
        assert Storage(db).transactional is True

    def test_compensation_log_is_opt_in(self, monkeypatch):
        monkeypatch.setenv("MONGO_TRANSACTIONS", "false")

        assert load_settings().mongo_transactions is False

    def test_every_order_write_runs_in_one_committed_session(self, tx_services, client, calls, seed):
        tx_services.orders.create_order(
            seed["buyer_id"], seed["address_id"], "bank_transfer",
            [{"product_id": seed["laptop_id"], "quantity": 1}, {"product_id": seed["mouse_id"], "quantity": 2}],
        )

        session, = client.sessions
        assert session.committed and session.ended
        writes = [(name, used) for name, used in calls if name in WRITE_METHODS]
        assert {name for name, _ in writes} == {"insert_one", "find_one_and_update"}
        assert all(used is session for _, used in writes)

    def test_failed_order_aborts_without_compensating_writes(self, tx_services, client, calls, seed):
        with pytest.raises(InsufficientStockError):
            tx_services.orders.create_order(
                seed["buyer_id"], seed["address_id"], "bank_transfer",
                [
                    {"product_id": seed["laptop_id"], "quantity": 1},
                    {"product_id": seed["mouse_id"], "quantity": 11},
                ],
            )

        session, = client.sessions
        assert session.aborted and not session.committed
        assert [name for name, used in calls if name in WRITE_METHODS and used is not session] == []
        assert "delete_one" not in [name for name, _ in calls]

    def test_write_conflict_surfaces_as_concurrent_update(self, client):
        conflict = OperationFailure(
            "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]},
        )

        with pytest.raises(ConcurrentUpdate):
            with UnitOfWork(client, transactional=True):
                raise conflict
        assert client.sessions[0].aborted
        assert client.sessions[0].ended


class TestConditionalWrites:
    def test_decrement_refuses_to_go_negative(self, db, repos, seed):
        assert repos.products.decrement_stock(seed["laptop_id"], 6) is False
        assert repos.products.decrement_stock(seed["laptop_id"], 5) is True
        assert stock_of(db, seed["laptop_id"]) == 0

    def test_transition_requires_expected_status(self, db, repos, seed):
        order_id = create_document(db, "order", {"status": "paid", "user_id": seed["buyer_id"]})

        assert repos.orders.transition(order_id, ("pending",), {"status": "cancelled"}) is False
        assert db["order"].find_one({"_id": ObjectId(order_id)})["status"] == "paid"

    def test_transition_is_undone_on_rollback(self, db, storage, repos, seed):
        order_id = create_document(db, "order", {"status": "pending", "user_id": seed["buyer_id"]})

        with pytest.raises(RuntimeError):
            with storage.unit_of_work() as uow:
                changes = {"status": "paid", "paid_at": datetime(2026, 1, 1)}
                assert repos.orders.transition(order_id, ("pending",), changes, uow)
                raise RuntimeError()

        restored = db["order"].find_one({"_id": ObjectId(order_id)})
        assert restored["status"] == "pending"
        assert restored["paid_at"] is None

    def test_get_missing_raises_typed_not_found(self, repos):
        with pytest.raises(OrderNotFound):
            repos.orders.get(str(ObjectId()))


class TestHelpers:
    def test_oid_rejects_malformed_ids(self):
        with pytest.raises(InvalidId):
            oid("12345")

    def test_to_naive_utc(self):
        aware = datetime(2026, 1, 15, 16, 0, tzinfo=timezone(timedelta(hours=7)))

        assert to_naive_utc(aware) == datetime(2026, 1, 15, 9, 0)
        assert to_naive_utc(datetime(2026, 1, 15, 9, 0)) == datetime(2026, 1, 15, 9, 0)
