"""
Observer, signal and mixin tests.
"""

import pytest

from datajuggler import ContractViolation, ModelDefinitionFault, OperationContext, Property, mixins, signals
from datajuggler.observer import ObserverRegistry


class TestObserverRegistry:

    @pytest.mark.asyncio
    async def test_parent_listeners_run_first(self, ds, Book):
        Novel = ds.define("Novel", {"genre": "string"}, base=Book)
        order = []
        Novel.observe("before save", lambda ctx: order.append("child"))
        Book.observe("before save", lambda ctx: order.append("parent"))
        await Novel.create({"title": "Dune"})
        assert order == ["parent", "child"]

    @pytest.mark.asyncio
    async def test_child_listeners_do_not_leak_to_parent(self, ds, Book):
        Novel = ds.define("Novel", {}, base=Book)
        calls = []
        Novel.observe("before save", lambda ctx: calls.append(ctx.model_name))
        await Book.create({"title": "Dune"})
        assert calls == []

    @pytest.mark.asyncio
    async def test_decorator_and_remove(self, Book):
        calls = []

        @Book.observe("access")
        def seen(ctx):
            calls.append(ctx.query)

        await Book.find({"where": {"title": "x"}})
        assert Book.remove_observer("access", seen) is True
        assert Book.remove_observer("access", seen) is False
        await Book.find()
        assert len(calls) == 1
        assert calls[0]["where"] == {"title": "x"}

    @pytest.mark.asyncio
    async def test_access_observer_narrows_query(self, Book):
        await Book.create([{"title": "a", "published": True}, {"title": "b"}])
        Book.observe("access", lambda ctx: ctx.query.setdefault("where", {}).update(published=True))
        assert [b.title for b in await Book.find()] == ["a"]
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_waterfall_of_operations(self):
        registry = ObserverRegistry("Thing")
        registry.observe("one", lambda ctx: ctx.evolve(data={"step": 1}))
        registry.observe("two", lambda ctx: ctx.evolve(data={"step": ctx.data["step"] + 1}))
        ctx = await registry.notify(["one", "two"], OperationContext(model=None))
        assert ctx.data == {"step": 2}

    @pytest.mark.asyncio
    async def test_registration_during_notify_uses_snapshot(self):
        registry = ObserverRegistry("Thing")
        calls = []

        def first(ctx):
            calls.append("first")
            registry.observe("op", lambda c: calls.append("late"))

        registry.observe("op", first)
        await registry.notify("op", OperationContext(model=None))
        assert calls == ["first"]
        await registry.notify("op", OperationContext(model=None))
        assert calls == ["first", "first", "late"]

    @pytest.mark.asyncio
    async def test_notify_around(self):
        registry = ObserverRegistry("Thing")
        calls = []
        registry.observe("before run", lambda ctx: calls.append("before"))
        registry.observe("after run", lambda ctx: calls.append(("after", ctx.results)))
        registry.observe("after run error", lambda ctx: calls.append(("error", str(ctx.error))))

        async def work(ctx):
            return 7

        async def fail(ctx):
            raise RuntimeError("boom")

        assert await registry.notify_around("run", OperationContext(model=None), work) == 7
        with pytest.raises(RuntimeError):
            await registry.notify_around("run", OperationContext(model=None), fail)
        assert calls == ["before", ("after", 7), "before", ("error", "boom")]

    def test_non_callable_listener(self, Book):
        with pytest.raises(TypeError):
            Book.observe("access", "nope")

    def test_clear_observers(self, Book):
        Book.observe("access", lambda ctx: None)
        Book.observe("loaded", lambda ctx: None)
        Book.clear_observers("access")
        assert not Book._observers.has_observers("access")
        assert Book._observers.has_observers("loaded")
        Book.clear_observers()
        assert not Book._observers.has_observers("loaded")


class TestSignals:

    @pytest.mark.asyncio
    async def test_changed_after_create_and_update(self, Book):
        seen = []
        signals.changed.connect(lambda sender, instance, **kw: seen.append((sender, instance.title)))
        book = await Book.create({"title": "Dune"})
        await book.update_attributes({"title": "Emma"})
        assert seen == [(Book, "Dune"), (Book, "Emma")]

    @pytest.mark.asyncio
    async def test_deleted_and_deleted_all(self, Book):
        deleted, wiped = [], []
        signals.deleted.connect(lambda sender, id, instance, **kw: deleted.append(id))
        signals.deleted_all.connect(lambda sender, where, count, **kw: wiped.append(count))

        book = await Book.create({"title": "Dune"})
        await book.destroy()
        await Book.create([{"title": "a"}, {"title": "b"}])
        await Book.delete_by_id(2)
        await Book.destroy_all()
        assert deleted == [1, 2]
        assert wiped == [1]

    @pytest.mark.asyncio
    async def test_sender_filter(self, ds, Book):
        Other = ds.define("Other", {"name": "string"})
        seen = []

        @signals.changed.connect(sender=Book)
        async def only_books(sender, instance, **kw):
            seen.append(sender.__name__)

        await Other.create({"name": "x"})
        await Book.create({"title": "y"})
        assert seen == ["Book"]

    @pytest.mark.asyncio
    async def test_receiver_errors_reach_caller(self, Book):
        seen = []

        def broken(sender, **kw):
            raise ValueError("nope")

        with signals.changed.connected(broken, priority=1):
            signals.changed.connect(lambda sender, **kw: seen.append(sender))
            with pytest.raises(ValueError, match="nope"):
                await Book.create({"title": "Dune"})
        assert broken not in signals.changed.receivers
        assert seen == []
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_robust_send_logs_receiver_errors(self, Book, caplog):
        def broken(sender, **kw):
            raise ValueError("nope")

        signals.changed.connect(broken)
        signals.changed.connect(lambda sender, **kw: "ok")
        with caplog.at_level("ERROR", logger="datajuggler.signals"):
            results = await signals.changed.robust_send(Book, instance=None)
        assert isinstance(results[0], ValueError)
        assert results[1] == "ok"
        assert "raised ValueError: nope" in caplog.text


class TestMixins:

    @pytest.mark.asyncio
    async def test_time_stamp(self, ds):
        Post = ds.define("Post", {"title": "string"}, {"mixins": {"TimeStamp": True}})
        post = await Post.create({"title": "a"})
        assert post.created_at is not None
        assert post.created_at == post.updated_at

        created = post.created_at
        await post.save()
        assert post.created_at == created
        assert post.updated_at >= created

    @pytest.mark.asyncio
    async def test_time_stamp_on_bulk_update(self, ds):
        Post = ds.define("Post", {"title": "string"},
                         {"mixins": {"TimeStamp": {"created_at": "born", "updated_at": "touched"}}})
        await Post.create({"title": "a"})
        await Post.update_all({"title": "b"})
        stored = await Post.find_by_id(1)
        assert stored.born is not None
        assert stored.touched >= stored.born

    def test_time_stamp_applied_once_per_hierarchy(self, ds):
        Post = ds.define("Post", {}, {"mixins": {"TimeStamp": True}})
        Reply = ds.define("Reply", {}, {"mixins": {"TimeStamp": True}}, base=Post)
        assert len(Reply._observers.listeners("before save")) == 0
        assert len(Post._observers.listeners("before save")) == 1

    def test_custom_mixin(self, ds):
        @mixins.register("Flagged")
        def flagged(model, options):
            model.define_property("flag", {"type": "boolean", "default": options.get("default", False)})

        Thing = ds.define("Thing", {}, {"mixins": {"Flagged": {"default": True}}})
        assert Thing().flag is True
        assert "Flagged" in mixins

    def test_model_as_mixin(self, ds):
        class Auditable(ds.Model):
            audited_by = Property(str)

            @classmethod
            def audit_label(cls):
                return f"audited {cls.__name__}"

        Doc = ds.define("Doc", {"title": "string"}, {"mixins": {"Auditable": True}})
        assert "audited_by" in Doc._definition.properties
        assert Doc.audit_label() == "audited Doc"

    def test_unknown_mixin(self, ds):
        with pytest.raises(ModelDefinitionFault, match="unknown mixin"):
            ds.define("Doc", {}, {"mixins": {"Nope": True}})

    def test_invalid_mixin(self):
        with pytest.raises(ContractViolation):
            mixins.define("Broken", 42)
