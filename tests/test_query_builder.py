"""
Tests for the collection query builder.

Runs every terminal against the in-memory client: filtering, ordering,
windowing, projections, pagination, bulk writes, aggregates and grouping.
"""

from typing import Optional

import pytest

from docmachine import (
    Field,
    InvalidQueryError,
    Model,
    ModelStateError,
    MultipleResultsError,
    NotFoundError,
    SchemaError,
)


class Person(Model):
    """Person model used by the query tests."""

    name: str
    age: int
    role: str = "member"
    email: Optional[str] = None
    city: Optional[str] = Field(None, db_column="town")
    tags: list[str] = Field(default_factory=list)
    profile: dict = Field(default_factory=dict)


async def seed():
    """25 members aged 20-44 and 5 admins aged 50-54."""
    for i in range(25):
        await Person.create(
            name=f"m{i:02d}",
            age=20 + i,
            email=f"m{i}@example.com" if i % 2 == 0 else None,
            city="Oslo" if i < 3 else "Bergen",
            tags=["vip"] if i < 2 else [],
        )
    for j in range(5):
        await Person.create(
            name=f"a{j}",
            age=50 + j,
            role="admin",
            email=f"a{j}@example.com",
            city="Oslo",
            profile={"level": j},
        )


class TestFiltering:
    """Test where() forms against stored data."""

    @pytest.mark.asyncio
    async def test_operator_alphabets_select_the_same_records(self):
        await seed()
        symbols = await Person.query().where("age", ">=", 40).order_by("age").ids()
        keywords = await Person.query().where("age", "gte", 40).order_by("age").ids()
        assert symbols == keywords
        assert len(symbols) == 10

    @pytest.mark.asyncio
    async def test_nested_group(self):
        await seed()
        query = Person.query().where("role", "admin").or_where(
            lambda q: q.where("age", "<", 22).where("role", "member")
        )
        assert await query.count() == 7

    @pytest.mark.asyncio
    async def test_lookups(self):
        await seed()
        assert await Person.query().where(age__gte=50, role="admin").count() == 5
        assert await Person.where(age__lt=22).count() == 2

    @pytest.mark.asyncio
    async def test_null_matches_missing_and_none(self):
        await seed()
        assert await Person.query().where_null("email").count() == 12
        assert await Person.query().where_not_null("email").count() == 18

    @pytest.mark.asyncio
    async def test_mapped_column(self):
        """Test that logical field names are translated to stored keys."""
        await seed()
        query = Person.query().where("city", "Oslo")
        assert query.to_filter() == {"town": "Oslo"}
        assert await query.count() == 8

    @pytest.mark.asyncio
    async def test_primary_key_filter(self):
        person = await Person.create(name="solo", age=30)
        query = Person.query().where("id", person.id)
        assert query.to_filter() == {"_id": person.id}
        assert (await query.first()).name == "solo"

    @pytest.mark.asyncio
    async def test_array_contains(self):
        await seed()
        assert await Person.query().where_array_contains("tags", "vip").count() == 2

    @pytest.mark.asyncio
    async def test_sub_document_path(self):
        await seed()
        assert await Person.query().where("profile.level", ">", 2).count() == 2

    @pytest.mark.asyncio
    async def test_like(self):
        await seed()
        assert await Person.query().where_like("name", "a%").count() == 5
        assert await Person.query().where_ilike("name", "A%").count() == 5
        assert await Person.query().where_like("name", "A%").count() == 0

    @pytest.mark.asyncio
    async def test_between(self):
        await seed()
        assert await Person.query().where_between("age", [20, 24]).count() == 5
        assert await Person.query().where_not_between("age", [21, 54]).count() == 1

    @pytest.mark.asyncio
    async def test_where_in(self):
        await seed()
        assert await Person.query().where_in("name", ["a0", "m00", "nobody"]).count() == 2


class TestOrderingAndWindowing:
    """Test order_by, skip and limit."""

    @pytest.mark.asyncio
    async def test_order_and_limit(self):
        await seed()
        people = await Person.query().order_by("-age").limit(3).all()
        assert [person.age for person in people] == [54, 53, 52]

    @pytest.mark.asyncio
    async def test_secondary_sort(self):
        await seed()
        first = await Person.query().order_by("role").order_by("age", "desc").first()
        assert (first.role, first.age) == ("admin", 54)

    @pytest.mark.asyncio
    async def test_skip(self):
        await seed()
        people = await Person.query().order_by("age").skip(28).all()
        assert [person.age for person in people] == [53, 54]
        assert [p.age for p in await Person.query().order_by("age").offset(1).limit(1).all()] == [21]

    @pytest.mark.asyncio
    async def test_limit_zero_returns_nothing(self):
        await seed()
        assert await Person.query().limit(0).all() == []

    @pytest.mark.asyncio
    async def test_count_ignores_window(self):
        await seed()
        assert await Person.query().where("role", "member").skip(3).limit(5).count() == 25

    def test_find_options(self):
        options = Person.query().order_by("-age").skip(10).limit(5).select("name", "city").to_find_options()
        assert options == {
            "sort": [("age", -1)],
            "skip": 10,
            "limit": 5,
            "projection": {"name": 1, "town": 1},
        }

    def test_invalid_arguments(self):
        with pytest.raises(InvalidQueryError):
            Person.query().order_by("age", "up")
        with pytest.raises(InvalidQueryError):
            Person.query().limit(-1)
        with pytest.raises(InvalidQueryError):
            Person.query().skip(1.5)
        with pytest.raises(InvalidQueryError):
            Person.query().select("name").deselect("age")

    def test_unknown_relation_and_embedded_field(self):
        with pytest.raises(SchemaError):
            Person.query().load("friends")
        with pytest.raises(SchemaError):
            Person.query().embed("tags")


class TestTerminals:
    """Test single-record terminals."""

    @pytest.mark.asyncio
    async def test_first(self):
        await seed()
        assert (await Person.query().order_by("age").first()).age == 20
        assert await Person.query().where("age", 99).first() is None

    @pytest.mark.asyncio
    async def test_first_or_fail(self):
        with pytest.raises(NotFoundError) as exc_info:
            await Person.query().where("age", 99).first_or_fail()
        assert exc_info.value.criteria == {"age": 99}

    @pytest.mark.asyncio
    async def test_sole(self):
        await seed()
        assert (await Person.query().where("age", 54).sole()).name == "a4"
        with pytest.raises(MultipleResultsError):
            await Person.query().where("role", "admin").sole()
        with pytest.raises(NotFoundError):
            await Person.query().where("age", 99).sole()

    @pytest.mark.asyncio
    async def test_exists(self):
        await seed()
        assert await Person.query().where("role", "admin").exists()
        assert not await Person.query().where("role", "owner").exists()

    @pytest.mark.asyncio
    async def test_builder_can_run_twice(self):
        await seed()
        query = Person.query().where("role", "admin").order_by("age")
        first_run = [person.name for person in await query.all()]
        second_run = [person.name for person in await query.fetch()]
        assert first_run == second_run == ["a0", "a1", "a2", "a3", "a4"]

    @pytest.mark.asyncio
    async def test_clone_is_independent(self):
        await seed()
        admins = Person.query().where("role", "admin")
        senior = admins.clone().where("age", ">", 52)
        assert await admins.count() == 5
        assert await senior.count() == 2


class TestPagination:
    """Test paginate()."""

    @pytest.mark.asyncio
    async def test_first_page(self):
        await seed()
        page = await Person.query().where("age", ">=", 18).order_by("age").paginate(page=1, per_page=10)

        assert len(page.data) == 10
        assert page.meta == {
            "total": 30,
            "page": 1,
            "per_page": 10,
            "last_page": 3,
            "has_next": True,
            "has_prev": False,
            "from": 1,
            "to": 10,
        }
        assert [person.age for person in page][:2] == [20, 21]

    @pytest.mark.asyncio
    async def test_last_page(self):
        await seed()
        page = await Person.query().order_by("age").paginate(3, 10)
        assert not page.has_next
        assert page.has_prev
        assert (page.meta["from"], page.meta["to"]) == (21, 30)

    @pytest.mark.asyncio
    async def test_page_past_the_end(self):
        await seed()
        page = await Person.query().paginate(4, 10)
        assert page.data == []
        assert page.meta["total"] == 30
        assert page.meta["from"] is None
        assert not page.has_next

    @pytest.mark.asyncio
    async def test_partial_last_page(self):
        await seed()
        page = await Person.query().paginate(2, 20)
        assert len(page) == 10
        assert page.last_page == 2

    @pytest.mark.asyncio
    async def test_empty_result(self):
        page = await Person.query().paginate()
        assert page.meta["total"] == 0
        assert page.meta["last_page"] == 0
        assert not page.has_next

    @pytest.mark.asyncio
    async def test_invalid_page(self):
        with pytest.raises(InvalidQueryError):
            await Person.query().paginate(0, 10)
        with pytest.raises(InvalidQueryError):
            await Person.query().paginate(1, 0)

    @pytest.mark.asyncio
    async def test_to_json(self):
        await Person.create(name="solo", age=30)
        data = (await Person.query().paginate()).to_json()
        assert data["data"][0]["name"] == "solo"
        assert data["meta"]["total"] == 1


class TestProjection:
    """Test select() and deselect()."""

    @pytest.mark.asyncio
    async def test_select_loads_only_named_fields(self):
        await seed()
        person = await Person.query().where("age", 50).select("name").first()

        assert person.name == "a0"
        assert person.id is not None
        assert set(person.attributes) == {"id", "name"}
        assert person.to_json(computed=False) == {"id": str(person.id), "name": "a0"}

    @pytest.mark.asyncio
    async def test_loaded_fields_of_partial_instance_can_be_saved(self):
        await seed()
        person = await Person.query().where("age", 50).select("name").first()
        person.name = "renamed"
        await person.save()

        document = await Person.get_collection().find_one({"_id": person.id})
        assert document["name"] == "renamed"
        assert document["age"] == 50
        assert document["role"] == "admin"

    @pytest.mark.asyncio
    async def test_unloaded_fields_cannot_be_saved(self):
        await seed()
        person = await Person.query().where("age", 50).select("name").first()
        person.role = "member"
        with pytest.raises(ModelStateError):
            await person.save()

    @pytest.mark.asyncio
    async def test_deselect(self):
        await seed()
        person = await Person.query().where("age", 50).deselect("tags", "profile").first()
        assert "tags" not in person.attributes
        assert person.role == "admin"


class TestBulkWrites:
    """Test update() and delete() on the query."""

    @pytest.mark.asyncio
    async def test_update_sets_plain_fields(self):
        await seed()
        assert await Person.query().where("role", "admin").update({"role": "owner"}) == 5
        assert await Person.query().where("role", "owner").count() == 5

    @pytest.mark.asyncio
    async def test_update_maps_columns(self):
        await seed()
        await Person.query().where("name", "a0").update({"city": "Tromso"})
        assert await Person.query().where("city", "Tromso").count() == 1

    @pytest.mark.asyncio
    async def test_update_operators(self):
        await seed()
        await Person.query().where("role", "admin").update({"$inc": {"age": 1}})
        assert await Person.query().max("age") == 55

    @pytest.mark.asyncio
    async def test_update_returns_matched_count(self):
        await seed()
        assert await Person.query().where("role", "admin").update({"role": "admin"}) == 5

    @pytest.mark.asyncio
    async def test_invalid_updates(self):
        with pytest.raises(InvalidQueryError):
            await Person.query().update({})
        with pytest.raises(InvalidQueryError):
            await Person.query().update({"$inc": {"age": 1}, "name": "x"})

    @pytest.mark.asyncio
    async def test_delete(self):
        await seed()
        assert await Person.query().where("role", "member").where("age", "<", 25).delete() == 5
        assert await Person.count() == 25


class TestValuesAndAggregates:
    """Test pluck, ids, distinct and numeric aggregates."""

    @pytest.mark.asyncio
    async def test_pluck(self):
        await seed()
        query = Person.query().where("role", "admin").order_by("age")
        assert await query.pluck("name") == ["a0", "a1", "a2", "a3", "a4"]
        assert await query.pluck("city") == ["Oslo"] * 5
        assert await query.pluck("profile.level") == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_ids(self):
        first = await Person.create(name="x", age=30)
        second = await Person.create(name="y", age=31)
        assert await Person.query().order_by("age").ids() == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_distinct(self):
        await seed()
        assert sorted(await Person.query().distinct("role")) == ["admin", "member"]
        assert sorted(await Person.query().where("role", "admin").distinct("city")) == ["Oslo"]

    @pytest.mark.asyncio
    async def test_aggregates(self):
        await seed()
        admins = Person.query().where("role", "admin")
        assert await admins.sum("age") == 260
        assert await admins.avg("age") == 52
        assert await admins.min("age") == 50
        assert await admins.max("age") == 54

    @pytest.mark.asyncio
    async def test_aggregates_without_matches(self):
        nobody = Person.query().where("role", "nobody")
        assert await nobody.sum("age") == 0
        assert await nobody.avg("age") is None
        assert await nobody.max("age") is None

    @pytest.mark.asyncio
    async def test_aggregate_pipeline(self):
        await seed()
        rows = await Person.query().where("role", "admin").aggregate([{"$count": "total"}])
        assert rows == [{"total": 5}]


class TestGrouping:
    """Test group_by() and having()."""

    @pytest.mark.asyncio
    async def test_group_by(self):
        await seed()
        groups = await Person.query().group_by("role").order_by("role").all()
        assert groups == [{"role": "admin", "count": 5}, {"role": "member", "count": 25}]

    @pytest.mark.asyncio
    async def test_having(self):
        await seed()
        groups = await Person.query().group_by("role").having("count", ">", 10).all()
        assert groups == [{"role": "member", "count": 25}]

    @pytest.mark.asyncio
    async def test_group_by_mapped_column_with_filter(self):
        await seed()
        groups = await Person.query().where("age", "<", 50).group_by("city").order_by("-count").all()
        assert groups == [{"city": "Bergen", "count": 22}, {"city": "Oslo", "count": 3}]

    @pytest.mark.asyncio
    async def test_group_by_nested_field_uses_flat_key(self):
        await seed()
        groups = await (
            Person.query().where("role", "admin").group_by("profile.level")
            .having("profile_level", ">=", 3).order_by("-profile.level").all()
        )
        assert groups == [{"profile_level": 4, "count": 1}, {"profile_level": 3, "count": 1}]
