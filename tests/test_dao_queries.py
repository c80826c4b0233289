"""
Query tests - filters, ordering, paging, fields and geo queries
against the memory connector.
"""

import re

import pytest

from datajuggler import BadRequestFault, GeoPoint, NotFoundFault


@pytest.fixture
def Item(ds):
    return ds.define(
        "Item",
        {
            "name": "string",
            "qty": "number",
            "vip": "boolean",
            "tags": ["string"],
            "address": {"type": "object"},
        },
    )


async def _seed(Item):
    await Item.create([
        {"name": "apple", "qty": 5, "vip": True, "tags": ["fruit", "red"], "address": {"city": "Oslo"}},
        {"name": "banana", "qty": 12, "vip": False, "tags": ["fruit"], "address": {"city": "Lima"}},
        {"name": "Carrot", "qty": 7, "tags": ["veg"], "address": {"city": "Oslo"}},
        {"name": "date", "qty": None, "vip": False, "tags": [], "address": {"city": "Rome"}},
    ])


def _names(items):
    return [item.name for item in items]


class TestWhereOperators:

    @pytest.mark.asyncio
    async def test_equality_and_coercion(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"qty": "12"}})) == ["banana"]
        assert _names(await Item.find({"where": {"vip": "true"}})) == ["apple"]

    @pytest.mark.asyncio
    async def test_comparisons(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"qty": {"gt": 5}}})) == ["banana", "Carrot"]
        assert _names(await Item.find({"where": {"qty": {"gte": 5, "lt": 12}}})) == ["apple", "Carrot"]
        assert _names(await Item.find({"where": {"qty": {"between": [6, 12]}}})) == ["banana", "Carrot"]

    @pytest.mark.asyncio
    async def test_inq_nin_neq(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"name": {"inq": ["apple", "date"]}}})) == ["apple", "date"]
        assert _names(await Item.find({"where": {"name": {"nin": ["apple", "date"]}}})) == ["banana", "Carrot"]
        assert "apple" not in _names(await Item.find({"where": {"name": {"neq": "apple"}}}))

    @pytest.mark.asyncio
    async def test_like_family(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"name": {"like": "an%"}}})) == ["banana"]
        assert _names(await Item.find({"where": {"name": {"like": "d_te"}}})) == ["date"]
        assert _names(await Item.find({"where": {"name": {"ilike": "carrot"}}})) == ["Carrot"]
        assert _names(await Item.find({"where": {"name": {"nlike": "an"}}})) == ["apple", "Carrot", "date"]
        assert _names(await Item.find({"where": {"name": {"nilike": "c%"}}})) == ["apple", "banana", "date"]

    @pytest.mark.asyncio
    async def test_regexp(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"name": {"regexp": "^[ab]"}}})) == ["apple", "banana"]
        assert _names(await Item.find({"where": {"name": {"regexp": "/^c/i"}}})) == ["Carrot"]
        assert _names(await Item.find({"where": {"name": re.compile("e$")}})) == ["apple", "date"]

    @pytest.mark.asyncio
    async def test_logical_operators(self, Item):
        await _seed(Item)
        found = await Item.find({"where": {"or": [{"name": "apple"}, {"qty": {"gt": 10}}]}})
        assert _names(found) == ["apple", "banana"]
        found = await Item.find({"where": {"and": [{"vip": False}, {"qty": {"gt": 10}}]}})
        assert _names(found) == ["banana"]
        found = await Item.find({"where": {"nor": [{"name": "apple"}, {"name": "banana"}]}})
        assert _names(found) == ["Carrot", "date"]

    @pytest.mark.asyncio
    async def test_array_and_nested_values(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"tags": "fruit"}})) == ["apple", "banana"]
        assert _names(await Item.find({"where": {"address.city": "Oslo"}})) == ["apple", "Carrot"]

    @pytest.mark.asyncio
    async def test_null_match(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"where": {"qty": None}})) == ["date"]


class TestOrderingAndPaging:

    @pytest.mark.asyncio
    async def test_default_order_is_by_id(self, Item):
        await _seed(Item)
        assert [item.id for item in await Item.find()] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_order_desc_with_missing_values_first(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"order": "qty ASC"})) == ["date", "apple", "Carrot", "banana"]
        assert _names(await Item.find({"order": "qty desc"})) == ["banana", "Carrot", "apple", "date"]

    @pytest.mark.asyncio
    async def test_multiple_order_keys(self, Item):
        await _seed(Item)
        found = await Item.find({"order": ["vip DESC", "name"]})
        assert _names(found)[0] == "apple"

    @pytest.mark.asyncio
    async def test_limit_and_skip(self, Item):
        await _seed(Item)
        assert _names(await Item.find({"limit": 2})) == ["apple", "banana"]
        assert _names(await Item.find({"limit": 2, "skip": 1})) == ["banana", "Carrot"]
        assert _names(await Item.find({"offset": 3})) == ["date"]

    @pytest.mark.asyncio
    async def test_find_one(self, Item):
        await _seed(Item)
        item = await Item.find_one({"where": {"qty": {"gt": 6}}, "order": "qty DESC"})
        assert item.name == "banana"
        assert await Item.find_one({"where": {"name": "kiwi"}}) is None

    @pytest.mark.asyncio
    async def test_fields(self, Item):
        await _seed(Item)
        found = await Item.find({"fields": ["name"], "limit": 1})
        data = found[0].to_object()
        assert data["name"] == "apple"
        assert "qty" not in data

        found = await Item.find({"fields": {"address": False, "tags": False}, "limit": 1})
        data = found[0].to_object()
        assert "address" not in data and data["qty"] == 5


class TestLookups:

    @pytest.mark.asyncio
    async def test_find_by_id(self, Item):
        await _seed(Item)
        assert (await Item.find_by_id(2)).name == "banana"
        assert (await Item.find_by_id("2")).name == "banana"
        assert await Item.find_by_id(99) is None
        with pytest.raises(NotFoundFault, match="requires the id argument") as exc_info:
            await Item.find_by_id(None)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_find_by_ids_keeps_requested_order(self, Item):
        await _seed(Item)
        found = await Item.find_by_ids([3, 1, 99, 2])
        assert [item.id for item in found] == [3, 1, 2]
        assert await Item.find_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_count_and_exists(self, Item):
        await _seed(Item)
        assert await Item.count() == 4
        assert await Item.count({"vip": False}) == 2
        assert await Item.exists(1) is True
        assert await Item.exists(42) is False
        with pytest.raises(NotFoundFault, match="requires the id argument") as exc_info:
            await Item.exists(None)
        assert exc_info.value.code == "NOT_FOUND"


class TestFilterValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filter", [
        {"limit": -1},
        {"limit": 2.5},
        {"limit": "many"},
        {"skip": -3},
        {"order": "name UP"},
        {"where": {"name": {"inq": "apple"}}},
        {"where": {"qty": {"between": [1]}}},
        {"where": {"or": {"name": "apple"}}},
        {"where": {"name": {"like": 5}}},
    ])
    async def test_rejected(self, Item, filter):
        with pytest.raises(BadRequestFault) as exc_info:
            await Item.find(filter)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_direction_message(self, Item):
        with pytest.raises(BadRequestFault, match="invalid direction"):
            await Item.find({"order": "name sideways"})

    @pytest.mark.asyncio
    async def test_non_object_where(self, Item):
        with pytest.raises(BadRequestFault, match="is not an object"):
            await Item.find({"where": "name = 1"})


class TestNear:

    @pytest.fixture
    def Place(self, ds):
        return ds.define("Place", {"name": "string", "loc": "geopoint"})

    @pytest.mark.asyncio
    async def test_sorted_by_distance(self, Place):
        await Place.create([
            {"name": "far", "loc": {"lat": 48.8566, "lng": 2.3522}},
            {"name": "near", "loc": "10.75,59.92"},
            {"name": "nearest", "loc": GeoPoint({"lat": 59.91, "lng": 10.74})},
        ])
        found = await Place.find({"where": {"loc": {"near": "10.75,59.91"}}})
        assert _names(found) == ["nearest", "near", "far"]

    @pytest.mark.asyncio
    async def test_max_distance(self, Place):
        await Place.create([
            {"name": "oslo", "loc": GeoPoint({"lat": 59.91, "lng": 10.75})},
            {"name": "paris", "loc": GeoPoint({"lat": 48.8566, "lng": 2.3522})},
        ])
        found = await Place.find({
            "where": {"loc": {"near": GeoPoint({"lat": 59.9, "lng": 10.7}), "maxDistance": 50, "unit": "kilometers"}},
        })
        assert _names(found) == ["oslo"]
