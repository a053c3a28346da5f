"""Tests for the store's transaction and connection handling, against an in-memory client."""

import asyncio
import copy
from types import SimpleNamespace

import pytest

try:
    import settlement_store
except Exception as e:  # prisma's client is generated from schema.prisma
    pytest.skip(f"Prisma client not generated: {e}", allow_module_level=True)

from settlement_errors import DuplicateUploadError, UploadNotFoundError
from settlement_reports import main
from settlement_store import SettlementStore, run_with_store


class FakeModel:
    def __init__(self, client, name):
        self.client = client
        self.name = name

    @property
    def rows(self):
        return self.client.tables[self.name]

    def _matches(self, row, where):
        return all(getattr(row, key) == value for key, value in where.items())

    async def find_first(self, where):
        return next((r for r in self.rows if self._matches(r, where)), None)

    async def find_many(self, where=None, order=None):
        return [r for r in self.rows if self._matches(r, where or {})]

    async def create(self, data):
        self.client.db.next_id += 1
        row = SimpleNamespace(id=f"{self.name}-{self.client.db.next_id}", createdAt="2024-04-02", **data)
        self.rows.append(row)
        return row

    async def create_many(self, data):
        db = self.client.db
        if db.fail_on_batch is not None and db.batches == db.fail_on_batch:
            raise RuntimeError("connection reset during insert")
        db.batches += 1
        self.rows.extend(SimpleNamespace(**d) for d in data)
        return len(data)

    async def delete(self, where):
        row = await self.find_first(where)
        if row is not None:
            self.rows.remove(row)
        return row


class FakeClient:
    def __init__(self, db, tables):
        self.db = db
        self.tables = tables
        self.upload = FakeModel(self, "upload")
        self.settlementrow = FakeModel(self, "settlementrow")


class FakeTransaction:
    """Writes go to a copy of the tables and are committed only on a clean exit."""

    def __init__(self, db):
        self.db = db

    async def __aenter__(self):
        self.client = FakeClient(self.db, copy.deepcopy(self.db.tables))
        return self.client

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.db.tables.clear()
            self.db.tables.update(self.client.tables)
        return False


class FakePrisma(FakeClient):
    def __init__(self):
        self.next_id = 0
        self.batches = 0
        self.fail_on_batch = None
        self.connected = False
        super().__init__(self, {"upload": [], "settlementrow": []})

    def tx(self, timeout=None):
        return FakeTransaction(self)

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def is_connected(self):
        return self.connected


@pytest.fixture
def store(monkeypatch):
    monkeypatch.setattr(settlement_store, "Prisma", FakePrisma)
    return SettlementStore(batch_size=2)


def _rows(n):
    return [{"order-id": f"O{i}", "amount": str(i)} for i in range(n)]


def test_failed_batch_leaves_no_upload_behind(store):
    store.prisma.fail_on_batch = 1

    with pytest.raises(RuntimeError):
        asyncio.run(store.create_upload("s.csv", "s.csv", "amazon", _rows(5)))

    assert store.prisma.tables == {"upload": [], "settlementrow": []}

    store.prisma.fail_on_batch = None
    upload_id = asyncio.run(store.create_upload("s.csv", "s.csv", "amazon", _rows(5)))

    rows = store.prisma.tables["settlementrow"]
    assert [r.position for r in rows] == [0, 1, 2, 3, 4]
    assert {r.uploadId for r in rows} == {upload_id}
    assert store.prisma.tables["upload"][0].rowCount == 5


def test_same_file_twice_is_a_duplicate(store):
    asyncio.run(store.create_upload("s.csv", "s.csv", "amazon", _rows(1)))
    with pytest.raises(DuplicateUploadError):
        asyncio.run(store.create_upload("s.csv", "s.csv", "amazon", _rows(1)))
    # another marketplace is a different upload
    asyncio.run(store.create_upload("s.csv", "s.csv", "flipkart", _rows(1)))


def test_delete_upload(store):
    upload_id = asyncio.run(store.create_upload("s.csv", "april.csv", "amazon", _rows(1)))

    deleted = asyncio.run(store.delete_upload(upload_id))

    assert deleted["original_name"] == "april.csv"
    assert store.prisma.tables["upload"] == []
    with pytest.raises(UploadNotFoundError):
        asyncio.run(store.delete_upload(upload_id))


def test_run_with_store_disconnects_when_call_fails(store):
    seen = {}

    async def boom(s):
        seen["loop"] = asyncio.get_running_loop()
        seen["connected"] = s.prisma.is_connected()
        raise ValueError("bad result payload")

    with pytest.raises(ValueError):
        run_with_store(boom, store)

    assert seen["connected"] is True
    assert store.prisma.is_connected() is False
    assert seen["loop"].is_closed()


def test_run_with_store_returns_the_call_result(store):
    async def count(s):
        return len(await s.list_uploads())

    assert run_with_store(count, store) == 0
    assert store.prisma.is_connected() is False


def test_uploads_and_delete_commands(store, monkeypatch, tmp_path, capsys):
    shared = store.prisma
    monkeypatch.setattr(settlement_store, "Prisma", lambda: shared)
    upload_id = asyncio.run(store.create_upload("s.csv", "april.csv", "amazon", _rows(3)))
    log_file = str(tmp_path / "run.log")

    assert asyncio.run(main(["--log-file", log_file, "uploads", "--marketplace", "amazon"])) == 0
    assert upload_id in capsys.readouterr().out

    assert asyncio.run(main(["--log-file", log_file, "delete", upload_id])) == 0
    assert "Deleted april.csv (amazon)" in capsys.readouterr().out

    assert asyncio.run(main(["--log-file", log_file, "delete", upload_id])) == 1
    assert asyncio.run(main(["--log-file", log_file, "uploads"])) == 0
    assert "No stored uploads." in capsys.readouterr().out
