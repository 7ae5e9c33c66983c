"""
nodegraph Query Engine Tests

Filter algebra, sorting, limits and value comparison.
"""

import pytest


def supertag_filter(system_id="supertag:tool", **extra):
    return {"type": "supertag", "supertagSystemId": system_id, **extra}


async def make_tool(backend, content, **properties):
    return await backend.create_node(
        content=content,
        supertag_system_id="supertag:tool",
        properties=properties,
    )


class TestQueryDefinition:
    """Test query definition parsing."""

    def test_parse_camel_case(self):
        """Wire JSON uses camelCase and a type discriminator."""
        from nodegraph.query.filters import (
            NotFilter,
            PropertyFilter,
            PropertyOp,
            SupertagFilter,
            parse_query_definition,
        )

        definition = parse_query_definition({
            "filters": [
                {"type": "supertag", "supertagSystemId": "supertag:tool", "includeInherited": False},
                {"type": "not", "filters": [
                    {"type": "property", "fieldSystemId": "field:status", "op": "eq", "value": "done"},
                ]},
            ],
            "sort": {"field": "content", "direction": "desc"},
            "limit": 5,
        })

        assert isinstance(definition.filters[0], SupertagFilter)
        assert definition.filters[0].include_inherited is False
        assert isinstance(definition.filters[1], NotFilter)
        inner = definition.filters[1].filters[0]
        assert isinstance(inner, PropertyFilter)
        assert inner.op == PropertyOp.EQ
        assert definition.sort.direction == "desc"
        assert definition.limit == 5

    def test_snake_case_accepted(self):
        """Python callers may use field names directly."""
        from nodegraph.query.filters import parse_query_definition

        definition = parse_query_definition({
            "filters": [{"type": "supertag", "supertag_system_id": "supertag:tool"}],
        })
        assert definition.filters[0].supertag_system_id == "supertag:tool"

    def test_to_json_round_trip(self):
        """to_json emits camelCase keys and parses back to the same model."""
        from nodegraph.query.filters import parse_query_definition

        wire = {
            "filters": [{"type": "hasField", "fieldSystemId": "field:path", "negate": True}],
            "limit": 2,
        }
        definition = parse_query_definition(wire)
        out = definition.to_json()

        assert out["filters"][0]["fieldSystemId"] == "field:path"
        assert parse_query_definition(out) == definition

    def test_invalid_definition(self):
        """Unknown filter types and bad operators are validation errors."""
        from nodegraph.exceptions import ValidationError
        from nodegraph.query.filters import parse_query_definition

        with pytest.raises(ValidationError):
            parse_query_definition({"filters": [{"type": "bogus"}]})
        with pytest.raises(ValidationError):
            parse_query_definition({"filters": [
                {"type": "property", "fieldSystemId": "field:x", "op": "like"},
            ]})
        with pytest.raises(ValidationError) as exc_info:
            parse_query_definition({"limit": -1})
        assert exc_info.value.details["errors"]

    def test_iter_filters(self):
        """iter_filters walks nested groups depth-first."""
        from nodegraph.query.filters import iter_filters, parse_query_definition

        definition = parse_query_definition({"filters": [
            {"type": "or", "filters": [
                {"type": "content", "query": "a"},
                {"type": "and", "filters": [{"type": "content", "query": "b"}]},
            ]},
        ]})
        kinds = [f.type for f in iter_filters(definition.filters)]
        assert kinds == ["or", "content", "and", "content"]


class TestCompareValues:
    """Test the fail-closed value comparison."""

    def test_equality_is_strict(self):
        """Numbers, strings and booleans never compare equal across types."""
        from nodegraph.query.engine import compare_values
        from nodegraph.query.filters import PropertyOp

        assert compare_values(1, PropertyOp.EQ, 1)
        assert compare_values(1, PropertyOp.EQ, 1.0)
        assert not compare_values(True, PropertyOp.EQ, 1)
        assert not compare_values("1", PropertyOp.EQ, 1)
        assert compare_values("1", PropertyOp.NEQ, 1)

    def test_ordering(self):
        """Numbers compare numerically, ISO dates chronologically, text lexically."""
        from nodegraph.query.engine import compare_values
        from nodegraph.query.filters import PropertyOp

        assert compare_values(10, PropertyOp.GT, 9)
        assert compare_values(3, PropertyOp.LTE, 3)
        assert compare_values("2024-02-01", PropertyOp.GT, "2024-01-31")
        assert compare_values("b", PropertyOp.GT, "a")

    def test_fails_closed(self):
        """Incompatible operands are a non-match, not an error."""
        from nodegraph.query.engine import compare_values
        from nodegraph.query.filters import PropertyOp

        assert not compare_values("abc", PropertyOp.GT, 5)
        assert not compare_values(None, PropertyOp.LT, 5)
        assert not compare_values(True, PropertyOp.GT, 0)
        assert not compare_values(float("nan"), PropertyOp.GT, 0)
        assert not compare_values(5, PropertyOp.CONTAINS, "5")

    def test_string_operators(self):
        """String operators ignore case."""
        from nodegraph.query.engine import compare_values
        from nodegraph.query.filters import PropertyOp

        assert compare_values("/usr/bin/RG", PropertyOp.CONTAINS, "bin/rg")
        assert compare_values("Ripgrep", PropertyOp.STARTS_WITH, "rip")
        assert compare_values("ripgrep", PropertyOp.ENDS_WITH, "GREP")
        assert not compare_values("ripgrep", PropertyOp.STARTS_WITH, "grep")


class TestQueryEvaluation:
    """Test query evaluation against both backends."""

    @pytest.mark.asyncio
    async def test_total_count_vs_limit(self, backend):
        """Limit truncates results; total_count is the full match count."""
        await backend.init()
        for i in range(10):
            await make_tool(backend, f"tool {i}")

        result = await backend.evaluate_query({"filters": [supertag_filter()], "limit": 3})

        assert len(result.nodes) == 3
        assert result.total_count == 10
        assert [n.content for n in result.nodes] == ["tool 0", "tool 1", "tool 2"]
        await backend.close()

    @pytest.mark.asyncio
    async def test_end_to_end_links(self, backend):
        """Two tools, one depending on the other via a reference."""
        from nodegraph.schema import SYSTEM_FIELDS
        from nodegraph.types import Reference

        await backend.init()
        a = await make_tool(backend, "A", **{SYSTEM_FIELDS.PATH: "/usr/bin/x"})
        b = await make_tool(
            backend, "B",
            **{SYSTEM_FIELDS.PATH: "/usr/bin/y", SYSTEM_FIELDS.DEPENDENCIES: Reference(a)},
        )

        result = await backend.evaluate_query({"filters": [supertag_filter()]})
        assert result.ids == [a, b]
        assert result.total_count == 2

        result = await backend.evaluate_query({"filters": [
            supertag_filter(),
            {
                "type": "relation",
                "relationType": "linksTo",
                "targetNodeId": a,
                "fieldSystemId": SYSTEM_FIELDS.DEPENDENCIES,
            },
        ]})
        assert result.ids == [b]

        linked_from_b = await backend.evaluate_query({"filters": [
            {"type": "relation", "relationType": "linkedFrom", "targetNodeId": b},
        ]})
        assert linked_from_b.ids == [a]

        referenced = await backend.evaluate_query({"filters": [
            supertag_filter(),
            {"type": "relation", "relationType": "linkedFrom"},
        ]})
        assert referenced.ids == [a]
        await backend.close()

    @pytest.mark.asyncio
    async def test_empty_filters_match_all_live(self, backend):
        """No filters matches every live node, system nodes included."""
        await backend.init()
        node_id = await backend.create_node(content="plain")
        deleted = await backend.create_node(content="deleted")
        await backend.delete_node(deleted)

        result = await backend.evaluate_query({"filters": [], "limit": 10_000})
        health = await backend.health_check()

        assert node_id in result.ids
        assert deleted not in result.ids
        assert result.total_count == health["node_count"]
        await backend.close()

    @pytest.mark.asyncio
    async def test_supertag_inheritance_filter(self, backend):
        """includeInherited matches nodes tagged with descendant supertags."""
        await backend.init()
        tool = await make_tool(backend, "tool")
        item = await backend.create_node(content="item", supertag_system_id="supertag:item")

        inherited = await backend.evaluate_query({"filters": [supertag_filter("supertag:item")]})
        direct = await backend.evaluate_query({"filters": [
            supertag_filter("supertag:item", includeInherited=False),
        ]})

        assert inherited.ids == [tool, item]
        assert direct.ids == [item]
        await backend.close()

    @pytest.mark.asyncio
    async def test_boolean_composition(self, backend):
        """and/or/not compose; empty or is true, empty not is false."""
        await backend.init()
        rg = await make_tool(backend, "ripgrep")
        fd = await make_tool(backend, "fd")
        jq = await make_tool(backend, "jq")

        async def ids(*filters):
            return (await backend.evaluate_query({"filters": [supertag_filter(), *filters]})).ids

        assert await ids({"type": "or", "filters": [
            {"type": "content", "query": "rip"},
            {"type": "content", "query": "jq"},
        ]}) == [rg, jq]
        assert await ids({"type": "not", "filters": [
            {"type": "content", "query": "rip"},
        ]}) == [fd, jq]
        # NOT (a AND b) keeps nodes that fail either
        assert await ids({"type": "not", "filters": [
            {"type": "content", "query": "r"},
            {"type": "content", "query": "g"},
        ]}) == [fd, jq]
        assert await ids({"type": "and", "filters": []}) == [rg, fd, jq]
        assert await ids({"type": "or", "filters": []}) == [rg, fd, jq]
        assert await ids({"type": "not", "filters": []}) == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_property_filters(self, backend):
        """Property comparisons, including fail-closed numeric ones."""
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        one = await make_tool(backend, "one", **{SYSTEM_FIELDS.ORDER: 1})
        five = await make_tool(backend, "five", **{SYSTEM_FIELDS.ORDER: 5})
        ten = await make_tool(backend, "ten", **{SYSTEM_FIELDS.ORDER: "10"})
        text = await make_tool(backend, "text", **{SYSTEM_FIELDS.ORDER: "abc"})
        none = await make_tool(backend, "none")

        async def ids(op, value=None, field=SYSTEM_FIELDS.ORDER):
            result = await backend.evaluate_query({"filters": [
                supertag_filter(),
                {"type": "property", "fieldSystemId": field, "op": op, "value": value},
            ]})
            return result.ids

        assert await ids("gt", 4) == [five]
        assert await ids("lte", 5) == [one, five]
        assert await ids("eq", 1) == [one]
        assert await ids("eq", "10") == [ten]
        assert await ids("neq", 1) == [five, ten, text]
        assert await ids("contains", "B") == [text]
        assert await ids("isEmpty") == [none]
        assert await ids("isNotEmpty") == [one, five, ten, text]
        assert await ids("eq", 1, field="field:unknown") == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_multi_value_property_any_match(self, backend):
        """A property filter passes if any value of the field matches."""
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        node_id = await make_tool(backend, "multi")
        await backend.add_property_value(node_id, SYSTEM_FIELDS.TAGS, "cli")
        await backend.add_property_value(node_id, SYSTEM_FIELDS.TAGS, "search")

        result = await backend.evaluate_query({"filters": [
            {"type": "property", "fieldSystemId": SYSTEM_FIELDS.TAGS, "op": "eq", "value": "search"},
        ]})
        assert result.ids == [node_id]
        await backend.close()

    @pytest.mark.asyncio
    async def test_content_filter(self, backend):
        """Content search is case-insensitive unless asked otherwise."""
        await backend.init()
        rg = await make_tool(backend, "RipGrep")

        async def ids(**content):
            result = await backend.evaluate_query({"filters": [
                supertag_filter(), {"type": "content", **content},
            ]})
            return result.ids

        assert await ids(query="ripgrep") == [rg]
        assert await ids(query="ripgrep", caseSensitive=True) == []
        assert await ids(query="RipG", caseSensitive=True) == [rg]
        assert await ids(query="") == [rg]
        await backend.close()

    @pytest.mark.asyncio
    async def test_has_field_filter(self, backend):
        """hasField tests for any edge of the field, or its absence."""
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        with_path = await make_tool(backend, "with", **{SYSTEM_FIELDS.PATH: ""})
        without = await make_tool(backend, "without")

        async def ids(field, negate=False):
            result = await backend.evaluate_query({"filters": [
                supertag_filter(),
                {"type": "hasField", "fieldSystemId": field, "negate": negate},
            ]})
            return result.ids

        assert await ids(SYSTEM_FIELDS.PATH) == [with_path]
        assert await ids(SYSTEM_FIELDS.PATH, negate=True) == [without]
        assert await ids("field:unknown") == []
        assert await ids("field:unknown", negate=True) == [with_path, without]
        await backend.close()

    @pytest.mark.asyncio
    async def test_owned_by_filter(self, backend):
        """ownedBy/childOf compare owner ids; missing targets match nothing."""
        await backend.init()
        parent = await backend.create_node(content="workspace")
        child = await make_tool(backend, "child")
        owned = await backend.create_node(
            content="owned", owner_id=parent, supertag_system_id="supertag:tool",
        )

        async def ids(relation_type, target=None):
            relation = {"type": "relation", "relationType": relation_type}
            if target is not None:
                relation["targetNodeId"] = target
            result = await backend.evaluate_query({"filters": [supertag_filter(), relation]})
            return result.ids

        assert await ids("ownedBy", parent) == [owned]
        assert await ids("childOf", parent) == [owned]
        assert await ids("childOf") == [owned]
        assert await ids("ownedBy", "missing") == []
        assert child not in await ids("ownedBy", parent)

        await backend.delete_node(parent)
        assert await ids("ownedBy", parent) == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_temporal_filter(self, backend):
        """Temporal filters compare node timestamps."""
        await backend.init()
        node_id = await make_tool(backend, "recent")

        async def ids(**temporal):
            result = await backend.evaluate_query({"filters": [
                supertag_filter(), {"type": "temporal", "field": "createdAt", **temporal},
            ]})
            return result.ids

        assert await ids(op="within", days=1) == [node_id]
        assert await ids(op="after", date="2000-01-01") == [node_id]
        assert await ids(op="before", date="2000-01-01") == []
        assert await ids(op="before", date="not-a-date") == []
        assert await ids(op="within") == [node_id]
        await backend.close()

    @pytest.mark.asyncio
    async def test_sorting(self, backend):
        """Sorting by property puts missing values last; default is creation order."""
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        b = await make_tool(backend, "b", **{SYSTEM_FIELDS.ORDER: 2})
        a = await make_tool(backend, "a", **{SYSTEM_FIELDS.ORDER: 10})
        c = await make_tool(backend, "c")

        async def ids(sort=None):
            definition = {"filters": [supertag_filter()]}
            if sort:
                definition["sort"] = sort
            return (await backend.evaluate_query(definition)).ids

        assert await ids() == [b, a, c]
        assert await ids({"field": "content"}) == [a, b, c]
        assert await ids({"field": "content", "direction": "desc"}) == [c, b, a]
        assert await ids({"field": SYSTEM_FIELDS.ORDER}) == [b, a, c]
        assert await ids({"field": SYSTEM_FIELDS.ORDER, "direction": "desc"}) == [a, b, c]
        assert await ids({"field": "createdAt", "direction": "desc"}) == [c, a, b]
        await backend.close()

    @pytest.mark.asyncio
    async def test_unknown_sort_field_warns(self, backend):
        """Sorting by a field no match has logs a warning and keeps match order."""
        from unittest.mock import patch

        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        b = await make_tool(backend, "b", **{SYSTEM_FIELDS.ORDER: 2})
        a = await make_tool(backend, "a")

        def definition(field):
            return {"filters": [supertag_filter()], "sort": {"field": field}}

        with patch("nodegraph.query.engine.logger") as logger:
            result = await backend.evaluate_query(definition("field:nonexistent"))
            assert result.ids == [b, a]
            assert logger.warning.call_count == 1

            await backend.evaluate_query(definition("content"))
            await backend.evaluate_query(definition(SYSTEM_FIELDS.ORDER))
            assert logger.warning.call_count == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_repeated_evaluation_is_stable(self, backend):
        """Evaluating twice without mutation yields identical ordering."""
        await backend.init()
        for name in ("x", "y", "z"):
            await make_tool(backend, name)

        first = await backend.evaluate_query({"filters": [supertag_filter()]})
        second = await backend.evaluate_query({"filters": [supertag_filter()]})
        assert first.ids == second.ids
        await backend.close()
