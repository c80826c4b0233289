"""
Relation, inclusion and scope tests.
"""

import pytest

from datajuggler import BadRequestFault, ContractViolation, ModelDefinitionFault


@pytest.fixture
def Author(ds):
    return ds.define("Author", {"name": "string"})


class TestBelongsTo:

    @pytest.mark.asyncio
    async def test_defaults_and_fetch(self, Book, Author):
        relation = Book.belongs_to(Author)
        assert relation.name == "author"
        assert relation.key_from == "author_id"
        assert Book.get_property_type("author_id") == "number"

        author = await Author.create({"name": "Herbert"})
        book = await Book.create({"title": "Dune", "author_id": author.id})
        found = await book.author()
        assert found.name == "Herbert"

    @pytest.mark.asyncio
    async def test_cache_and_refresh(self, Book, Author):
        Book.belongs_to(Author)
        author = await Author.create({"name": "Herbert"})
        book = await Book.create({"title": "Dune", "author_id": author.id})
        first = await book.author()
        await Author.update_all({"name": "Frank"})
        assert (await book.author()) is first
        assert (await book.author(refresh=True)).name == "Frank"

    @pytest.mark.asyncio
    async def test_missing_foreign_key(self, Book, Author):
        Book.belongs_to(Author)
        book = await Book.create({"title": "Orphan"})
        assert await book.author() is None

    @pytest.mark.asyncio
    async def test_create_points_foreign_key(self, Book, Author):
        Book.belongs_to(Author)
        book = await Book.create({"title": "Dune"})
        author = await book.author.create({"name": "Herbert"})
        assert book.author_id == author.id
        assert (await Book.find_by_id(book.id)).author_id == author.id

    @pytest.mark.asyncio
    async def test_custom_names(self, Book, Author):
        relation = Book.belongs_to(Author, as_="writer", foreign_key="writer_ref")
        assert relation.name == "writer"
        assert "writer_ref" in Book._definition.properties

    def test_conflict_with_property(self, Book, Author):
        with pytest.raises(ModelDefinitionFault):
            Book.belongs_to(Author, as_="title")

    def test_unknown_target(self, Book):
        with pytest.raises(ModelDefinitionFault):
            Book.belongs_to("Nobody")


class TestHasMany:

    @pytest.mark.asyncio
    async def test_scope_accessor(self, Book, Author):
        Author.has_many(Book)
        author = await Author.create({"name": "Herbert"})
        await author.books.create({"title": "Dune"})
        await author.books.create({"title": "Children of Dune"})
        await Book.create({"title": "Emma"})

        books = await author.books()
        assert [b.title for b in books] == ["Dune", "Children of Dune"]
        assert await author.books.count() == 2
        found = await author.books.find({"where": {"title": {"like": "Children%"}}})
        assert len(found) == 1

    @pytest.mark.asyncio
    async def test_build_presets_foreign_key(self, Book, Author):
        Author.has_many(Book)
        author = await Author.create({"name": "Herbert"})
        book = author.books.build({"title": "Dune"})
        assert book.author_id == author.id
        assert book.is_new_record()

    @pytest.mark.asyncio
    async def test_update_and_destroy(self, Book, Author):
        Author.has_many(Book)
        author = await Author.create({"name": "Herbert"})
        dune = await author.books.create({"title": "Dune"})
        other = await Book.create({"title": "Emma"})

        await author.books.update_by_id(dune.id, {"pages": 10})
        assert (await Book.find_by_id(dune.id)).pages == 10
        with pytest.raises(BadRequestFault):
            await author.books.update_by_id(other.id, {"pages": 1})

        assert await author.books.destroy_all() == {"count": 1}
        assert await Book.count() == 1

    @pytest.mark.asyncio
    async def test_scope_option(self, Book, Author):
        Author.has_many(Book, as_="long_books", scope={"where": {"pages": {"gt": 100}}})
        author = await Author.create({"name": "Herbert"})
        await author.long_books.create({"title": "Dune", "pages": 412})
        await author.long_books.create({"title": "Short", "pages": 12})
        assert [b.title for b in await author.long_books()] == ["Dune"]


class TestHasManyThrough:

    @pytest.fixture
    def clinic(self, ds):
        Physician = ds.define("Physician", {"name": "string"})
        Patient = ds.define("Patient", {"name": "string"})
        Appointment = ds.define("Appointment", {"at": "date"})
        Appointment.belongs_to(Physician)
        Appointment.belongs_to(Patient)
        Physician.has_many(Patient, through=Appointment)
        return Physician, Patient, Appointment

    @pytest.mark.asyncio
    async def test_add_exists_remove(self, clinic):
        Physician, Patient, Appointment = clinic
        doc = await Physician.create({"name": "House"})
        ann = await Patient.create({"name": "Ann"})

        link = await doc.patients.add(ann, {"at": "2024-01-01T10:00:00Z"})
        assert link.physician_id == doc.id and link.patient_id == ann.id
        assert await doc.patients.exists(ann) is True
        assert [p.name for p in await doc.patients()] == ["Ann"]

        await doc.patients.remove(ann)
        assert await doc.patients.exists(ann) is False
        assert await Patient.count() == 1

    @pytest.mark.asyncio
    async def test_create_links(self, clinic):
        Physician, Patient, Appointment = clinic
        doc = await Physician.create({"name": "House"})
        bob = await doc.patients.create({"name": "Bob"})
        assert await Appointment.count({"patient_id": bob.id}) == 1
        assert await doc.patients.count() == 1


class TestHasOne:

    @pytest.mark.asyncio
    async def test_single_instance(self, ds):
        Supplier = ds.define("Supplier", {"name": "string"})
        Account = ds.define("Account", {"number": "string"})
        Supplier.has_one(Account)
        acme = await Supplier.create({"name": "Acme"})

        account = await acme.account.create({"number": "123"})
        assert account.supplier_id == acme.id
        assert (await acme.account()).number == "123"
        with pytest.raises(BadRequestFault):
            await acme.account.create({"number": "456"})

        await acme.account.update({"number": "789"})
        assert (await Account.find_by_id(account.id)).number == "789"
        await acme.account.destroy()
        assert await acme.account(refresh=True) is None


class TestHasAndBelongsToMany:

    @pytest.mark.asyncio
    async def test_join_model(self, ds):
        Assembly = ds.define("Assembly", {"name": "string"})
        Part = ds.define("Part", {"number": "string"})
        relation = Assembly.has_and_belongs_to_many(Part)
        join = relation.model_through
        assert join.__name__ == "AssemblyPart"
        assert ds.get_model("AssemblyPart") is join

        engine = await Assembly.create({"name": "engine"})
        bolt = await Part.create({"number": "B-1"})
        await engine.parts.add(bolt)
        assert [p.number for p in await engine.parts()] == ["B-1"]


class TestSettingsRelations:

    @pytest.mark.asyncio
    async def test_resolved_when_target_defined(self, ds):
        Chapter = ds.define("Chapter", {"title": "string"}, {
            "relations": {"volume": {"type": "belongsTo", "model": "Volume", "foreignKey": "volume_ref"}},
        })
        assert "volume" not in Chapter._relations
        Volume = ds.define("Volume", {"name": "string"})
        assert Chapter._relations["volume"].key_from == "volume_ref"

        volume = await Volume.create({"name": "I"})
        chapter = await Chapter.create({"title": "One", "volume_ref": volume.id})
        assert (await chapter.volume()).name == "I"

    def test_invalid_type(self, ds):
        with pytest.raises(ModelDefinitionFault):
            ds.define("Chapter", {}, {"relations": {"x": {"type": "manyToMany", "model": "Y"}}})


class TestInclude:

    @pytest.mark.asyncio
    async def test_belongs_to(self, Book, Author):
        Book.belongs_to(Author)
        herbert = await Author.create({"name": "Herbert"})
        await Book.create([{"title": "Dune", "author_id": herbert.id}, {"title": "Orphan"}])

        books = await Book.find({"include": "author"})
        assert (await books[0].author()).name == "Herbert"
        assert books[0].to_json()["author"]["name"] == "Herbert"
        assert await books[1].author() is None

    @pytest.mark.asyncio
    async def test_has_many_with_scope(self, Book, Author):
        Author.has_many(Book)
        herbert = await Author.create({"name": "Herbert"})
        await Book.create([
            {"title": "Dune", "author_id": herbert.id},
            {"title": "Messiah", "author_id": herbert.id},
        ])
        authors = await Author.find({"include": {"relation": "books", "scope": {"order": "title DESC"}}})
        assert [b["title"] for b in authors[0].to_json()["books"]] == ["Messiah", "Dune"]

    @pytest.mark.asyncio
    async def test_nested(self, Book, Author):
        Book.belongs_to(Author)
        Author.has_many(Book)
        herbert = await Author.create({"name": "Herbert"})
        await Book.create({"title": "Dune", "author_id": herbert.id})

        books = await Book.find({"include": {"author": "books"}})
        data = books[0].to_json()
        assert [b["title"] for b in data["author"]["books"]] == ["Dune"]

    @pytest.mark.asyncio
    async def test_find_by_id_include(self, Book, Author):
        Book.belongs_to(Author)
        herbert = await Author.create({"name": "Herbert"})
        book = await Book.create({"title": "Dune", "author_id": herbert.id})
        found = await Book.find_by_id(book.id, {"include": ["author"]})
        assert found.to_json()["author"]["name"] == "Herbert"

    @pytest.mark.asyncio
    async def test_unknown_relation(self, Book):
        await Book.create({"title": "Dune"})
        with pytest.raises(BadRequestFault, match='Relation "reviews" is not defined for Book model'):
            await Book.find({"include": "reviews"})


class TestScopes:

    @pytest.mark.asyncio
    async def test_cached_class_scope(self, Book):
        Book.scope("published", {"where": {"published": True}, "order": "title"})
        await Book.create([{"title": "b", "published": True}, {"title": "a", "published": True}, {"title": "c"}])

        first = await Book.published()
        assert [b.title for b in first] == ["a", "b"]
        await Book.create({"title": "d", "published": True})
        assert (await Book.published()) is first
        assert len(await Book.published(refresh=True)) == 3
        assert await Book.published.count() == 3

    @pytest.mark.asyncio
    async def test_filter_merges_with_scope(self, Book):
        Book.scope("published", {"where": {"published": True}})
        await Book.create([{"title": "a", "published": True, "pages": 10}, {"title": "b", "published": True}])
        found = await Book.published({"where": {"pages": 10}})
        assert [b.title for b in found] == ["a"]

    @pytest.mark.asyncio
    async def test_build_and_create(self, Book):
        Book.scope("published", {"where": {"published": True}})
        assert Book.published.build({"title": "x"}).published is True
        book = await Book.published.create({"title": "y"})
        assert (await Book.find_by_id(book.id)).published is True

    @pytest.mark.asyncio
    async def test_callable_scope_and_methods(self, Book):
        def longer_than(accessor, pages):
            return accessor.find({"where": {"pages": {"gt": pages}}})

        Book.scope("recent", lambda receiver: {"order": "id DESC"}, {"longer_than": longer_than})
        await Book.create([{"title": "a", "pages": 5}, {"title": "b", "pages": 50}])
        assert [b.title for b in await Book.recent()] == ["b", "a"]
        assert [b.title for b in await Book.recent.longer_than(10)] == ["b"]

    @pytest.mark.asyncio
    async def test_default_scope(self, ds):
        Task = ds.define("Task", {"title": "string", "done": "boolean"},
                         {"scope": {"where": {"done": False}, "order": "title"}})
        task = await Task.create({"title": "b"})
        assert task.done is False
        await Task.create({"title": "a"})
        await ds.connector.create("Task", {"title": "c", "done": True})
        assert [t.title for t in await Task.find()] == ["a", "b"]
        assert await Task.count() == 2
        assert [t.title for t in await Task.find({"order": "title DESC"})] == ["b", "a"]

    def test_invalid_params(self, Book):
        with pytest.raises(ContractViolation):
            Book.scope("bad", "where published")
