"""
DataSource tests - models, connection lifecycle, schema helpers,
persistence and transactions.
"""

import asyncio

import pytest

from datajuggler import (
    ConnectionTimeoutFault,
    DataSource,
    DataSourceConfig,
    KeyValueMemory,
    Memory,
    ModelDefinitionFault,
    NotSupportedFault,
    Transaction,
    TransactionFault,
    Transient,
)


class SlowMemory(Memory):
    """Memory connector that connects once ``gate`` is set."""

    def __init__(self, settings=None):
        super().__init__(settings)
        self.gate = asyncio.Event()

    async def connect(self):
        await self.gate.wait()
        await super().connect()


class TestModels:

    def test_define_and_get_model(self, ds):
        Author = ds.define("Author", {"name": "string"})
        assert ds.get_model("Author") is Author
        assert ds.id_name("Author") == "id"
        assert ds.id_names("Author") == ["id"]
        assert Author.get_data_source() is ds

    def test_create_model_alias(self, ds):
        Author = ds.create_model("Author", {"name": "string"})
        assert ds.models["Author"] is Author

    def test_unknown_model(self, ds):
        with pytest.raises(ModelDefinitionFault):
            ds.get_model("Nobody")

    def test_model_base_is_cached_and_abstract(self, ds):
        assert ds.Model is ds.Model
        assert "Model" not in ds.models

    def test_attach_moves_model(self, ds, Book):
        other = DataSource("memory")
        other.attach(Book)
        assert Book.get_data_source() is other
        assert other.get_model("Book") is Book

    def test_repr(self, ds, Book):
        assert repr(ds) == "<DataSource memory disconnected models=['Book']>"


class TestConnection:

    @pytest.mark.asyncio
    async def test_lazy_connect(self, ds, Book):
        assert ds.connected is False
        await Book.create({"title": "Dune"})
        assert ds.connected is True

    @pytest.mark.asyncio
    async def test_lifecycle_hooks(self, ds):
        await ds.on_startup()
        assert ds.connected and ds.connector.connected
        await ds.on_shutdown()
        assert not ds.connected

    @pytest.mark.asyncio
    async def test_async_context_manager(self):
        async with DataSource("memory") as ds:
            assert ds.connected
        assert not ds.connected

    @pytest.mark.asyncio
    async def test_connection_timeout(self):
        ds = DataSource(SlowMemory, connection_timeout=0.05)
        Book = ds.define("Book", {"title": "string"})

        with pytest.raises(ConnectionTimeoutFault) as exc_info:
            await Book.find()
        assert exc_info.value.code == "CONNECTION_TIMEOUT"

        ds.connector.gate.set()
        await ds.ready()
        assert ds.connected
        assert await Book.find() == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_attempt(self):
        ds = DataSource(SlowMemory, connection_timeout=None)
        waiters = [asyncio.ensure_future(ds.ready()) for _ in range(3)]
        await asyncio.sleep(0)
        assert not any(w.done() for w in waiters)
        ds.connector.gate.set()
        await asyncio.gather(*waiters)
        assert ds.connected


class TestFromConfig:

    def test_from_dict(self):
        ds = DataSource.from_config({"connector": "transient", "connection_timeout": 1})
        assert isinstance(ds.connector, Transient)
        assert ds.name == "default"
        assert ds.connection_timeout == 1

    def test_from_config_object(self):
        config = DataSourceConfig.load(
            overrides={"datasources": {"cache": {"connector": "kv-memory", "serializer": "msgpack"}}},
            use_environ=False,
        )
        ds = DataSource.from_config(config, "cache")
        assert isinstance(ds.connector, KeyValueMemory)
        assert ds.name == "cache"
        assert ds.connector.serializer.name == "msgpack"


class TestSchema:

    @pytest.mark.asyncio
    async def test_automigrate_drops_rows(self, ds, Book):
        await Book.create([{"title": "a"}, {"title": "b"}])
        await ds.automigrate()
        assert await Book.count() == 0

    @pytest.mark.asyncio
    async def test_automigrate_selected_models(self, ds, Book):
        Author = ds.define("Author", {"name": "string"})
        await Book.create({"title": "a"})
        await Author.create({"name": "b"})
        await ds.automigrate([Book])
        assert await Book.count() == 0
        assert await Author.count() == 1

    @pytest.mark.asyncio
    async def test_autoupdate_keeps_rows(self, ds, Book):
        await Book.create({"title": "a"})
        await ds.autoupdate("Book")
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_unknown_model(self, ds, Book):
        with pytest.raises(ModelDefinitionFault, match="Nobody"):
            await ds.automigrate(["Book", "Nobody"])

    @pytest.mark.asyncio
    async def test_not_supported(self):
        ds = DataSource("transient")
        with pytest.raises(NotSupportedFault):
            await ds.automigrate()


class TestFilePersistence:

    @pytest.mark.asyncio
    async def test_rows_survive_reconnect(self, tmp_path):
        path = str(tmp_path / "db.json")
        first = DataSource("memory", file=path)
        Note = first.define("Note", {"text": "string"})
        await Note.create([{"text": "a"}, {"text": "b"}])
        assert (tmp_path / "db.json").exists()

        second = DataSource("memory", file=path)
        Note = second.define("Note", {"text": "string"})
        assert [n.text for n in await Note.find()] == ["a", "b"]
        created = await Note.create({"text": "c"})
        assert created.id == 3


class TestTransactions:

    @pytest.mark.asyncio
    async def test_commit(self, Book):
        tx = await Book.begin_transaction()
        assert isinstance(tx, Transaction)
        assert tx.is_active
        await Book.create({"title": "Dune"}, {"transaction": tx})
        await tx.commit()
        assert not tx.is_active
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_rollback_restores_snapshot(self, Book):
        await Book.create({"title": "Dune"})
        tx = await Book.begin_transaction("SERIALIZABLE")
        assert tx.isolation_level == "SERIALIZABLE"
        await Book.create({"title": "Emma"}, {"transaction": tx})
        await Book.update_all(None, {"pages": 5}, {"transaction": tx})
        await tx.rollback()
        books = await Book.find()
        assert [b.title for b in books] == ["Dune"]
        assert books[0].pages is None

    @pytest.mark.asyncio
    async def test_observers(self, ds):
        tx = await ds.begin_transaction({"isolation_level": "READ UNCOMMITTED"})
        calls = []
        for operation in ("before commit", "after commit", "before rollback", "after rollback"):
            tx.observe(operation, lambda ctx, op=operation: calls.append(op))
        await tx.commit()
        assert calls == ["before commit", "after commit"]

    @pytest.mark.asyncio
    async def test_finished_transaction_is_rejected(self, Book):
        tx = await Book.begin_transaction()
        await tx.commit()
        with pytest.raises(TransactionFault):
            await tx.rollback()
        with pytest.raises(TransactionFault):
            await Book.create({"title": "Dune"}, {"transaction": tx})

    @pytest.mark.asyncio
    async def test_timeout_rolls_back(self, Book):
        tx = await Book.begin_transaction(timeout=0.01)
        timed_out = []
        tx.observe("timeout", lambda ctx: timed_out.append(ctx.operation))
        await Book.create({"title": "Dune"}, {"transaction": tx})
        await asyncio.sleep(0.05)
        assert timed_out == ["timeout"]
        assert not tx.is_active
        assert await Book.count() == 0

    @pytest.mark.asyncio
    async def test_invalid_isolation_level(self, Book):
        with pytest.raises(TransactionFault, match="Invalid isolation level"):
            await Book.begin_transaction("SOMETIMES")

    @pytest.mark.asyncio
    async def test_connector_without_transactions(self, Book):
        transient = DataSource("transient")
        Ping = transient.define("Ping", {"at": "date"})
        with pytest.raises(TransactionFault, match="not supported"):
            await Ping.begin_transaction()

        tx = await Book.begin_transaction()
        with pytest.raises(TransactionFault, match="does not support transactions"):
            await Ping.create({}, {"transaction": tx})
        await tx.rollback()
