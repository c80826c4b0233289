"""
DAO write tests - upserts, bulk updates, deletes and instance writes.
"""

from unittest.mock import AsyncMock

import pytest

from datajuggler import (
    BadRequestFault,
    NotFoundFault,
    PKMissingFault,
    UnknownPropertyFault,
    ValidationError,
)


class TestUpsert:

    @pytest.mark.asyncio
    async def test_creates_without_id(self, Book):
        book = await Book.upsert({"title": "Dune"})
        assert book.id == 1
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_updates_existing(self, Book):
        await Book.create({"title": "Dune", "pages": 412})
        book = await Book.upsert({"id": 1, "pages": 500})
        assert book.pages == 500
        stored = await Book.find_by_id(1)
        assert stored.title == "Dune"
        assert stored.pages == 500

    @pytest.mark.asyncio
    async def test_creates_with_unknown_id(self, Book):
        book = await Book.upsert({"id": 7, "title": "Emma"})
        assert book.id == 7
        assert (await Book.find_by_id(7)).title == "Emma"

    @pytest.mark.asyncio
    async def test_uses_native_method_for_original_query(self, ds, Book):
        await Book.create({"title": "Dune"})
        native = AsyncMock(return_value=({"id": 1, "title": "Dune", "pages": 3}, {"is_new_instance": False}))
        ds.connector.update_or_create = native

        book = await Book.upsert({"id": 1, "title": "Dune", "pages": 3})

        native.assert_awaited_once()
        assert native.await_args.args[0] == "Book"
        assert book.pages == 3

    @pytest.mark.asyncio
    async def test_falls_back_when_access_rewrites_where(self, ds, Book):
        await Book.create({"title": "Dune"})
        native = AsyncMock()
        ds.connector.update_or_create = native

        def narrow(ctx):
            ctx.query["where"] = {"title": "Dune"}

        Book.observe("access", narrow)
        book = await Book.upsert({"id": 1, "pages": 9})

        native.assert_not_called()
        assert book.pages == 9
        assert (await Book.find_by_id(1)).pages == 9

    @pytest.mark.asyncio
    async def test_validate_upsert_true_raises(self, ds):
        Strict = ds.define("Strict", {"name": {"type": "string", "required": True}}, {"validate_upsert": True})
        await Strict.create({"name": "a"})
        with pytest.raises(ValidationError):
            await Strict.upsert({"id": 1, "name": ""})

    @pytest.mark.asyncio
    async def test_validate_upsert_none_warns(self, ds, caplog):
        Loose = ds.define("Loose", {"name": {"type": "string", "required": True}})
        await Loose.create({"name": "a"})
        with caplog.at_level("WARNING", logger="datajuggler.dao"):
            inst = await Loose.upsert({"id": 1, "name": ""})
        assert inst.name == ""
        assert "Ignoring validation errors" in caplog.text


class TestReplaceOrCreate:

    @pytest.mark.asyncio
    async def test_replaces_all_properties(self, Book):
        await Book.create({"title": "Dune", "pages": 412})
        book = await Book.replace_or_create({"id": 1, "title": "Emma"})
        assert book.title == "Emma"
        stored = await Book.find_by_id(1)
        assert stored.pages is None
        assert stored.published is False

    @pytest.mark.asyncio
    async def test_creates_missing(self, Book):
        book = await Book.replace_or_create({"id": 3, "title": "Emma"})
        assert book.id == 3
        assert await Book.count() == 1


class TestUpsertWithWhere:

    @pytest.mark.asyncio
    async def test_updates_single_match(self, Book):
        await Book.create([{"title": "Dune"}, {"title": "Emma"}])
        book = await Book.upsert_with_where({"title": "Emma"}, {"pages": 10})
        assert book.id == 2
        assert (await Book.find_by_id(2)).pages == 10

    @pytest.mark.asyncio
    async def test_creates_when_nothing_matches(self, Book):
        book = await Book.upsert_with_where({"title": "Ulysses"}, {"title": "Ulysses", "pages": 730})
        assert book.pages == 730
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_multiple_matches_rejected(self, Book):
        await Book.create([{"title": "Dune", "pages": 1}, {"title": "Dune", "pages": 2}])
        with pytest.raises(BadRequestFault, match="multiple instances"):
            await Book.upsert_with_where({"title": "Dune"}, {"pages": 3})

    @pytest.mark.asyncio
    async def test_multiple_matches_rejected_without_native(self, ds, Book):
        await Book.create([{"title": "Dune", "pages": 1}, {"title": "Dune", "pages": 2}])
        ds.connector.upsert_with_where = None
        with pytest.raises(BadRequestFault, match="multiple instances"):
            await Book.upsert_with_where({"title": "Dune"}, {"pages": 3})


class TestFindOrCreate:

    @pytest.mark.asyncio
    async def test_creates_then_finds(self, Book):
        book, created = await Book.find_or_create({"where": {"title": "Dune"}}, {"title": "Dune"})
        assert created is True
        again, created = await Book.find_or_create({"where": {"title": "Dune"}}, {"title": "Dune"})
        assert created is False
        assert again.id == book.id

    @pytest.mark.asyncio
    async def test_query_used_as_data(self, Book):
        book, created = await Book.find_or_create({"title": "Emma"})
        assert created is True
        assert book.title == "Emma"

    @pytest.mark.asyncio
    async def test_without_native_method(self, ds, Book):
        ds.connector.find_or_create = None
        _, created = await Book.find_or_create({"where": {"title": "Dune"}}, {"title": "Dune"})
        _, created_again = await Book.find_or_create({"where": {"title": "Dune"}}, {"title": "Dune"})
        assert (created, created_again) == (True, False)


class TestBulkWrites:

    @pytest.mark.asyncio
    async def test_update_all(self, Book):
        await Book.create([{"title": "a", "pages": 1}, {"title": "b", "pages": 1}, {"title": "c", "pages": 2}])
        info = await Book.update_all({"pages": 1}, {"published": "true"})
        assert info == {"count": 2}
        assert await Book.count({"published": True}) == 2

    @pytest.mark.asyncio
    async def test_update_all_without_where(self, Book):
        await Book.create([{"title": "a"}, {"title": "b"}])
        info = await Book.update_all({"pages": 3})
        assert info["count"] == 2

    @pytest.mark.asyncio
    async def test_destroy_all(self, Book, record_hooks):
        await Book.create([{"title": "a", "pages": 1}, {"title": "b", "pages": 2}])
        calls = record_hooks(Book, ("access", "before delete", "after delete"))
        info = await Book.destroy_all({"pages": {"lt": 2}})
        assert info == {"count": 1}
        assert calls == ["access", "before delete", "after delete"]
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_destroy_all_notify_false(self, Book, record_hooks):
        await Book.create({"title": "a"})
        calls = record_hooks(Book)
        await Book.destroy_all(None, {"notify": False})
        assert calls == []
        assert await Book.count() == 0


class TestDeleteById:

    @pytest.mark.asyncio
    async def test_hook_order(self, Book, record_hooks):
        await Book.create({"title": "Dune"})
        calls = record_hooks(Book)
        info = await Book.delete_by_id(1)
        assert info == {"count": 1}
        assert calls == ["access", "before delete", "after delete"]

    @pytest.mark.asyncio
    async def test_missing_is_not_an_error_by_default(self, Book):
        assert await Book.delete_by_id(42) == {"count": 0}

    @pytest.mark.asyncio
    async def test_strict_delete(self, ds):
        Doc = ds.define("Doc", {"title": "string"}, {"strict_delete": True})
        with pytest.raises(NotFoundFault) as exc_info:
            await Doc.delete_by_id(42)
        assert exc_info.value.status_code == 404
        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_strict_delete_option(self, Book):
        with pytest.raises(NotFoundFault):
            await Book.delete_by_id(42, {"strict_delete": True})

    @pytest.mark.asyncio
    async def test_requires_id(self, Book):
        with pytest.raises(BadRequestFault):
            await Book.delete_by_id(None)


class TestReplaceById:

    @pytest.mark.asyncio
    async def test_replace(self, Book):
        await Book.create({"title": "Dune", "pages": 412})
        book = await Book.replace_by_id(1, {"title": "Emma"})
        assert book.id == 1
        stored = await Book.find_by_id(1)
        assert stored.title == "Emma"
        assert stored.pages is None

    @pytest.mark.asyncio
    async def test_missing_row(self, Book):
        with pytest.raises(NotFoundFault):
            await Book.replace_by_id(5, {"title": "Emma"})

    @pytest.mark.asyncio
    async def test_requires_id(self, Book):
        with pytest.raises(PKMissingFault):
            await Book.replace_by_id(None, {"title": "Emma"})


class TestInstanceWrites:

    @pytest.mark.asyncio
    async def test_save_new_then_existing(self, Book):
        book = Book({"title": "Dune"})
        assert book.is_new_record()
        await book.save()
        assert book.id == 1

        book.pages = 600
        await book.save()
        assert (await Book.find_by_id(1)).pages == 600
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_save_hooks_for_existing(self, Book, record_hooks):
        book = await Book.create({"title": "Dune"})
        calls = record_hooks(Book)
        await book.save()
        assert calls == ["before save", "persist", "loaded", "after save"]

    @pytest.mark.asyncio
    async def test_update_attributes(self, Book):
        book = await Book.create({"title": "Dune", "pages": 1})
        await book.update_attributes({"pages": "2"})
        assert book.pages == 2
        assert (await Book.find_by_id(1)).pages == 2

    @pytest.mark.asyncio
    async def test_update_attribute(self, Book):
        book = await Book.create({"title": "Dune"})
        await book.update_attribute("title", "Emma")
        assert (await Book.find_by_id(1)).title == "Emma"

    @pytest.mark.asyncio
    async def test_update_attributes_rejects_id_change(self, Book):
        book = await Book.create({"title": "Dune"})
        with pytest.raises(BadRequestFault) as exc_info:
            await book.update_attributes({"id": 2})
        assert exc_info.value.status_code == 400
        await book.update_attributes({"id": "1", "title": "Emma"})

    @pytest.mark.asyncio
    async def test_update_attributes_validates(self, Book):
        book = await Book.create({"title": "Dune"})
        with pytest.raises(ValidationError):
            await book.update_attributes({"title": ""})
        assert (await Book.find_by_id(1)).title == "Dune"

    @pytest.mark.asyncio
    async def test_update_attributes_strict_throw(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": "throw"})
        inst = await Tight.create({"name": "a"})
        with pytest.raises(UnknownPropertyFault):
            await inst.update_attributes({"color": "red"})

    @pytest.mark.asyncio
    async def test_update_attributes_strict_filter(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": "filter"})
        inst = await Tight.create({"name": "a"})
        await inst.update_attributes({"name": "b", "color": "red"})
        stored = await Tight.find_by_id(inst.id)
        assert stored.to_object() == {"id": 1, "name": "b"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strict", [True, "validate"])
    async def test_update_attributes_strict_reports_unknown(self, ds, strict):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": strict})
        inst = await Tight.create({"name": "a"})
        with pytest.raises(ValidationError) as exc_info:
            await inst.update_attributes({"name": "b", "bogus": 1})
        assert exc_info.value.details["codes"] == {"bogus": ["unknown-property"]}
        rows = await ds.connector.all("Tight", {})
        assert rows == [{"id": 1, "name": "a"}]

    @pytest.mark.asyncio
    async def test_update_attributes_strict_never_writes_unknown(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": True})
        inst = await Tight.create({"name": "a"})
        await inst.update_attributes({"name": "b", "bogus": 1}, {"validate": False})
        rows = await ds.connector.all("Tight", {})
        assert rows == [{"id": 1, "name": "b"}]

    @pytest.mark.asyncio
    async def test_replace_attributes(self, Book):
        book = await Book.create({"title": "Dune", "pages": 10})
        await book.replace_attributes({"title": "Emma"})
        assert book.pages is None
        assert (await Book.find_by_id(1)).title == "Emma"

    @pytest.mark.asyncio
    async def test_destroy(self, Book, record_hooks):
        book = await Book.create({"title": "Dune"})
        calls = record_hooks(Book, ("access", "before delete", "after delete"))
        info = await book.destroy()
        assert info == {"count": 1}
        assert calls == ["access", "before delete", "after delete"]
        assert await Book.find_by_id(1) is None

    @pytest.mark.asyncio
    async def test_reload(self, Book):
        book = await Book.create({"title": "Dune"})
        await Book.update_all({"title": "Emma"})
        fresh = await book.reload()
        assert fresh.title == "Emma"
        assert book.title == "Dune"
