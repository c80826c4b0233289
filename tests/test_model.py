"""
Model tests - declaration styles, coercion, defaults, strict modes,
serialization and validations.
"""

from datetime import datetime, timezone

import pytest

from datajuggler import (
    GeoPoint,
    List,
    ModelDefinitionFault,
    ModelMeta,
    ModelRegistry,
    Property,
    UnknownPropertyFault,
)


class TestDeclaration:

    def test_class_syntax(self, ds):
        class Post(ds.Model):
            title = Property(str, required=True)
            views = Property("number", default=0)

            class Meta:
                hidden = ("views",)

        assert list(Post._definition.properties) == ["id", "title", "views"]
        assert Post.get_id_name() == "id"
        assert Post._definition.settings.hidden == ("views",)
        assert ModelRegistry.get("Post") is Post
        assert ds.get_model("Post") is Post

    def test_metaclass_keyword_properties(self, ds):
        Tag = ModelMeta("Tag", (ds.Model,), {}, properties={"label": str})
        assert Tag.get_property_type("label") == "string"

    def test_custom_id_suppresses_injection(self, ds):
        Country = ds.define("Country", {"code": {"type": "string", "id": True}, "name": "string"})
        assert Country.get_id_name() == "code"
        assert "id" not in Country._definition.properties

    def test_composite_id_order(self, ds):
        Seat = ds.define("Seat", {"row": {"type": "number", "id": 2}, "hall": {"type": "string", "id": 1}})
        assert Seat._definition.id_names == ["hall", "row"]

    def test_inheritance_copies_properties_and_rules(self, ds, Book):
        Novel = ds.define("Novel", {"genre": "string"}, base=Book)
        assert {"title", "pages", "published", "genre"} <= set(Novel._definition.properties)
        assert len(Novel._validations) == len(Book._validations)
        assert "genre" not in Book._definition.properties

    def test_define_property_later(self, Book):
        Book.define_property("isbn", {"type": "string", "required": True})
        assert Book.get_property_type("isbn") == "string"
        assert any(rule.attr == "isbn" for rule in Book._validations)

    def test_extend_model(self, Book):
        Book.extend_model({"isbn": "string", "rating": {"type": "number", "default": 0}})
        book = Book({"title": "Dune", "rating": "4"})
        assert book.rating == 4
        assert Book({"title": "Emma"}).rating == 0

    def test_unknown_data_source(self):
        from datajuggler import Model

        class Loose(Model):
            name = Property(str)

        with pytest.raises(ModelDefinitionFault):
            Loose.get_data_source()

    def test_unknown_type_is_forward_reference(self, ds):
        Order = ds.define("Order", {"customer": "Customer"})
        Customer = ds.define("Customer", {"name": "string"})
        order = Order({"customer": {"name": "Ann"}})
        assert isinstance(order.customer, Customer)


class TestCoercion:

    def test_scalar_types(self, ds):
        Thing = ds.define("Thing", {
            "n": "number", "s": "string", "b": "boolean", "d": "date", "o": "object", "g": "geopoint",
        })
        thing = Thing({"n": "4.5", "s": 12, "b": "false", "d": "2024-01-02T03:04:05Z",
                       "o": '{"a": 1}', "g": "10,20"})
        assert thing.n == 4.5
        assert thing.s == "12"
        assert thing.b is False
        assert thing.d == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert thing.o == {"a": 1}
        assert thing.g == GeoPoint({"lat": 20, "lng": 10})

    def test_typed_list(self, ds):
        Bag = ds.define("Bag", {"sizes": ["number"]})
        bag = Bag({"sizes": ["1", 2]})
        assert isinstance(bag.sizes, List)
        bag.sizes.append("3")
        assert list(bag.sizes) == [1, 2, 3]
        assert bag.to_object()["sizes"] == [1, 2, 3]

    def test_embedded_model(self, ds):
        Address = ds.define("Address", {"city": "string"}, {"id_injection": False})
        Person = ds.define("Person", {"name": "string", "address": Address})
        person = Person({"name": "Ann", "address": {"city": "Oslo"}})
        assert isinstance(person.address, Address)
        assert person.to_object()["address"] == {"city": "Oslo"}

    def test_assignment_coerces(self, Book):
        book = Book({"title": "Dune"})
        book.pages = "10"
        assert book.pages == 10
        book["published"] = "true"
        assert book.published is True


class TestDefaults:

    def test_literal_and_callable_defaults(self, ds):
        Note = ds.define("Note", {
            "tags": {"type": ["string"], "default": []},
            "score": {"type": "number", "default": lambda: 42},
        })
        a, b = Note(), Note()
        a.tags.append("x")
        assert list(b.tags) == []
        assert a.score == 42

    def test_default_fn(self, ds):
        Event = ds.define("Event", {
            "at": {"type": "date", "defaultFn": "now"},
            "ref": {"type": "string", "default_fn": "uuidv4"},
            "short": {"type": "string", "default_fn": "shortid"},
        })
        event = Event()
        assert event.at.tzinfo is not None
        assert len(event.ref) == 36
        assert 0 < len(event.short) <= 9

    def test_defaults_not_applied_when_disabled(self, Book):
        book = Book({"title": "x"}, apply_default_values=False)
        assert "published" not in book


class TestStrictModes:

    def test_non_strict_keeps_unknown(self, ds):
        Free = ds.define("Free", {"name": "string"})
        free = Free({"name": "a", "color": "red"})
        assert free.color == "red"
        assert free.to_object()["color"] == "red"

    @pytest.mark.asyncio
    async def test_strict_true_fails_validation(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": True})
        tight = Tight({"name": "a", "color": "red"})
        assert await tight.is_valid() is False
        assert tight.errors.codes == {"color": ["unknown-property"]}
        assert "color" not in tight.to_object()

    def test_strict_filter_drops(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": "filter"})
        tight = Tight({"name": "a", "color": "red"})
        assert "color" not in tight
        assert "color" not in tight.to_object()

    def test_strict_throw(self, ds):
        Tight = ds.define("Tight", {"name": "string"}, {"strict": "throw"})
        with pytest.raises(UnknownPropertyFault) as exc_info:
            Tight({"name": "a", "color": "red"})
        assert exc_info.value.status_code == 400
        tight = Tight({"name": "a"})
        with pytest.raises(UnknownPropertyFault):
            tight.color = "red"


class TestSerialization:

    def test_hidden_and_protected(self, ds):
        Account = ds.define("Account", {
            "email": "string",
            "password": {"type": "string", "hidden": True},
            "token": "string",
        }, {"protected": ["token"]})
        account = Account({"email": "a@b.c", "password": "pw", "token": "t"})
        assert account.to_json() == {"email": "a@b.c", "token": "t"}
        assert "password" in account.to_object()
        assert account.to_object(True, True, True) == {"email": "a@b.c"}

    def test_protected_dropped_when_nested(self, ds):
        Owner = ds.define("Owner", {"name": "string", "secret": {"type": "string", "protected": True}},
                          {"id_injection": False})
        Pet = ds.define("Pet", {"owner": Owner})
        pet = Pet({"owner": {"name": "Ann", "secret": "x"}})
        assert pet.to_json()["owner"] == {"name": "Ann"}

    def test_equality_and_repr(self, Book):
        a = Book({"title": "Dune"})
        b = Book({"title": "Dune"})
        assert a == b
        assert "Dune" in repr(a)
        assert repr(Book) == "[Model Book]"

    def test_to_object_round_trip(self, ds):
        Address = ds.define("Address", {"city": "string"}, {"id_injection": False})
        Person = ds.define("Person", {
            "name": "string", "born": "date", "tags": ["string"], "home": Address, "spot": "geopoint",
        })
        person = Person({"name": "Ann", "born": "2000-01-02T00:00:00Z", "tags": ["a"],
                         "home": {"city": "Oslo"}, "spot": {"lat": 1, "lng": 2}})
        assert Person(person.to_object()).to_object() == person.to_object()

    def test_reset_drops_undeclared(self, Book):
        book = Book({"title": "Dune", "extra": 1})
        book.reset()
        assert "extra" not in book.to_object()


class TestValidations:

    @pytest.mark.asyncio
    async def test_length_and_format(self, ds):
        User = ds.define("User", {"name": "string", "email": "string"})
        User.validates_length_of("name", min=2, max=5)
        User.validates_format_of("email", with_=r"^\S+@\S+$")

        user = User({"name": "a", "email": "nope"})
        assert await user.is_valid() is False
        assert user.errors.codes == {"name": ["length.min"], "email": ["format"]}
        assert user.errors["name"] == ["too short"]
        assert await user.is_valid() is False
        assert user.errors.codes == {"name": ["length.min"], "email": ["format"]}

        user = User({"name": "ann", "email": "ann@x.io"})
        assert await user.is_valid() is True
        assert user.errors is False

    @pytest.mark.asyncio
    async def test_numericality_inclusion_exclusion(self, ds):
        Item = ds.define("Item", {"qty": "number", "size": "string"})
        Item.validates_numericality_of("qty", int_=True)
        Item.validates_inclusion_of("size", in_=["S", "M", "L"])
        Item.validates_exclusion_of("size", in_=["XXL"], allow_null=True)

        item = Item({"qty": 1.5, "size": "XL"})
        assert await item.is_valid() is False
        assert item.errors.codes["qty"] == ["numericality.int"]
        assert item.errors.codes["size"] == ["inclusion"]

        item = Item({"qty": 2, "size": "M"})
        assert await item.is_valid() is True

    @pytest.mark.asyncio
    async def test_conditional_rule(self, ds):
        Order = ds.define("Order", {"shipped": "boolean", "tracking": "string"})
        Order.validates_presence_of("tracking", if_="shipped")
        assert await Order({"shipped": False}).is_valid() is True
        assert await Order({"shipped": True}).is_valid() is False

    @pytest.mark.asyncio
    async def test_custom_rules(self, ds):
        Range = ds.define("Range", {"low": "number", "high": "number"})

        def ordered(inst, err):
            if inst.low > inst.high:
                err()

        async def even(inst, err):
            if inst.high % 2:
                err()

        Range.validate("low", ordered, message="must not exceed high")
        Range.validate_async("high", even, code="even")

        bad = Range({"low": 5, "high": 3})
        assert await bad.is_valid() is False
        assert bad.errors["low"] == ["must not exceed high"]
        assert bad.errors.codes["high"] == ["even"]

    @pytest.mark.asyncio
    async def test_uniqueness(self, Book):
        Book.validates_uniqueness_of("title", ignore_case=True)
        first = await Book.create({"title": "Dune"})
        assert await Book({"title": "dune"}).is_valid() is False
        assert await first.is_valid() is True

    @pytest.mark.asyncio
    async def test_before_and_after_validate_hooks(self, ds):
        calls = []

        class Doc(ds.Model):
            title = Property(str, required=True)

            def before_validate(self, data):
                calls.append("before")
                self.title = (self.title or "").strip()

            async def after_validate(self, data):
                calls.append("after")

        doc = Doc({"title": "   "})
        assert await doc.is_valid() is False
        assert calls == ["before", "after"]
