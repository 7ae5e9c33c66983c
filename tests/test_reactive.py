"""
nodegraph Reactive Layer Tests

Query subscriptions and computed fields.
"""

from datetime import datetime, timezone

import pytest

TOOL_QUERY = {"filters": [{"type": "supertag", "supertagSystemId": "supertag:tool"}]}


async def make_tool(backend, content, **properties):
    return await backend.create_node(
        content=content,
        supertag_system_id="supertag:tool",
        properties=properties,
    )


def make_node(node_id, **values):
    """Assembled node with one scalar value per field, keyed by field name."""
    from nodegraph.types import AssembledNode, PropertyEntry, Scalar

    now = datetime.now(timezone.utc)
    return AssembledNode(
        id=node_id,
        content=node_id,
        system_id=None,
        owner_id=None,
        created_at=now,
        updated_at=now,
        properties={
            name: [PropertyEntry(
                data=Scalar(value),
                field_node_id=f"{name}-node",
                field_name=name,
                field_system_id=f"field:{name}",
            )]
            for name, value in values.items()
        },
    )


class TestQuerySubscriptions:
    """Test live query subscriptions."""

    @pytest.mark.asyncio
    async def test_no_false_negative(self, backend):
        """New matches fire the callback; unrelated writes do not."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        existing = await make_tool(backend, "existing")
        outsider = await backend.create_node(content="outsider", supertag_system_id="supertag:repo")

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(TOOL_QUERY, changes.append)
        assert [n.id for n in handle.get_last_results()] == [existing]

        new_id = await make_tool(backend, "new")

        assert len(changes) == 1
        assert [n.id for n in changes[0].added] == [new_id]
        assert changes[0].total_count == 2
        assert [n.id for n in handle.get_last_results()] == [existing, new_id]

        await backend.set_property(outsider, SYSTEM_FIELDS.DESCRIPTION, "unrelated")
        assert len(changes) == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_removal_and_change_detected(self, backend):
        """Deleting or untagging a member removes it; edits show as changed."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        a = await make_tool(backend, "a")
        b = await make_tool(backend, "b")
        c = await make_tool(backend, "c")

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(TOOL_QUERY, changes.append)

        await backend.set_property(a, SYSTEM_FIELDS.PATH, "/bin/a")
        assert [n.id for n in changes[-1].changed] == [a]
        assert changes[-1].added == [] and changes[-1].removed == []

        await backend.delete_node(b)
        assert [n.id for n in changes[-1].removed] == [b]

        await backend.remove_node_supertag(c, "supertag:tool")
        assert [n.id for n in changes[-1].removed] == [c]

        assert [n.id for n in handle.get_last_results()] == [a]
        assert handle.get_last_total_count() == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_relation_target_change(self, backend):
        """Mutating a relation target re-evaluates queries that name it."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        lib = await make_tool(backend, "lib")
        app = await make_tool(backend, "app")

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(
            {"filters": [{"type": "relation", "relationType": "linkedFrom", "targetNodeId": app}]},
            changes.append,
        )
        assert handle.get_last_results() == []

        # The mutated node is the target, not the node that starts matching
        await backend.link_nodes(app, SYSTEM_FIELDS.DEPENDENCIES, lib)

        assert [n.id for n in handle.get_last_results()] == [lib]
        assert len(changes) == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_schema_change_detected(self, backend):
        """A supertag gaining a parent pulls its nodes into inherited queries."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS

        await backend.init()
        gadget = await backend.create_node(
            content="#Gadget",
            system_id="supertag:gadget",
            supertag_system_id=SYSTEM_SUPERTAGS.SUPERTAG,
        )
        thing = await backend.create_node(content="thing", supertag_system_id="supertag:gadget")

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(
            {"filters": [{"type": "supertag", "supertagSystemId": SYSTEM_SUPERTAGS.ITEM}]},
            changes.append,
        )
        assert thing not in [n.id for n in handle.get_last_results()]

        item = await backend.find_node_by_system_id(SYSTEM_SUPERTAGS.ITEM)
        await backend.link_nodes(gadget, SYSTEM_FIELDS.EXTENDS, item.id)

        assert thing in [n.id for n in handle.get_last_results()]
        assert [n.id for n in changes[-1].added] == [thing]
        await backend.close()

    @pytest.mark.asyncio
    async def test_sorted_reorder(self, backend):
        """With a sort, moving a member's position is reported."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS

        await backend.init()
        a = await make_tool(backend, "a", **{SYSTEM_FIELDS.ORDER: 1})
        b = await make_tool(backend, "b", **{SYSTEM_FIELDS.ORDER: 2})

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(
            {**TOOL_QUERY, "sort": {"field": SYSTEM_FIELDS.ORDER}},
            changes.append,
        )
        assert [n.id for n in handle.get_last_results()] == [a, b]

        await backend.set_property(a, SYSTEM_FIELDS.ORDER, 3)

        assert changes[-1].reordered is True
        assert [n.id for n in handle.get_last_results()] == [b, a]
        await backend.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, backend):
        """Unsubscribed handles get no more callbacks; unsubscribe is idempotent."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        await backend.init()
        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(TOOL_QUERY, changes.append)
        assert service.subscription_count() == 1
        assert service.get_active_subscriptions()[0]["id"] == handle.id

        handle.unsubscribe()
        handle.unsubscribe()

        await make_tool(backend, "late")
        assert changes == []
        assert service.subscription_count() == 0
        await backend.close()

    @pytest.mark.asyncio
    async def test_callback_errors_isolated(self, backend):
        """A failing callback does not stop other subscriptions."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        await backend.init()
        service = QuerySubscriptionService(backend)

        def broken(change):
            raise RuntimeError("boom")

        received = []

        async def collector(change):
            received.append(change)

        failing = await service.subscribe(TOOL_QUERY, broken)
        await service.subscribe(TOOL_QUERY, collector)

        node_id = await make_tool(backend, "x")

        assert len(received) == 1
        assert [n.id for n in failing.get_last_results()] == [node_id]
        await backend.close()

    @pytest.mark.asyncio
    async def test_mutation_inside_callback(self, backend):
        """Writes made from a callback are seen by other subscriptions."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        await backend.init()
        service = QuerySubscriptionService(backend)
        created = []

        async def mirror(change):
            for node in change.added:
                created.append(await backend.create_node(
                    content=f"repo for {node.content}",
                    supertag_system_id="supertag:repo",
                ))

        await service.subscribe(TOOL_QUERY, mirror)
        repos = await service.subscribe(
            {"filters": [{"type": "supertag", "supertagSystemId": "supertag:repo"}]},
            lambda change: None,
        )

        await make_tool(backend, "rg")

        assert len(created) == 1
        assert [n.id for n in repos.get_last_results()] == created
        await backend.close()

    @pytest.mark.asyncio
    async def test_refresh_all_without_changes(self, backend):
        """Refreshing unchanged results does not fire callbacks."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        await backend.init()
        await make_tool(backend, "steady")
        service = QuerySubscriptionService(backend)
        changes = []
        await service.subscribe(TOOL_QUERY, changes.append)

        await service.refresh_all()

        assert changes == []
        service.clear()
        assert service.subscription_count() == 0
        await backend.close()

    @pytest.mark.asyncio
    async def test_limited_query_tracks_matches_past_limit(self, backend):
        """Deleting or untagging a match outside the limit updates the total."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        await backend.init()
        ids = [await make_tool(backend, name) for name in ("a", "b", "c", "d")]

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe({**TOOL_QUERY, "limit": 1}, changes.append)
        assert [n.id for n in handle.get_last_results()] == [ids[0]]
        assert handle.get_last_total_count() == 4

        await backend.delete_node(ids[2])
        assert handle.get_last_total_count() == 3
        assert len(changes) == 1
        assert changes[0].total_count == 3

        await backend.remove_node_supertag(ids[3], "supertag:tool")
        assert handle.get_last_total_count() == 2
        assert len(changes) == 2

        fresh = await backend.evaluate_query({**TOOL_QUERY, "limit": 1})
        assert fresh.total_count == handle.get_last_total_count()
        assert [n.id for n in handle.get_last_results()] == fresh.ids
        await backend.close()

    @pytest.mark.asyncio
    async def test_untyped_supertag_deleted(self, backend):
        """Deleting a plain node used as a supertag empties queries on it."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        if backend.backend_type == "graph":
            pytest.skip("graph backend only accepts typed supertags")

        await backend.init()
        base = await backend.create_node(content="Base")
        node = await backend.create_node(content="n")
        await backend.add_node_supertag(node, base)

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(
            {"filters": [{"type": "supertag", "supertagSystemId": base}]},
            changes.append,
        )
        assert [n.id for n in handle.get_last_results()] == [node]

        await backend.delete_node(base)

        assert handle.get_last_results() == []
        assert [n.id for n in changes[-1].removed] == [node]
        await backend.close()

    @pytest.mark.asyncio
    async def test_untyped_descendant_supertag_deleted(self, backend):
        """Deleting an untyped child supertag drops its nodes from inherited queries."""
        from nodegraph.reactive.subscriptions import QuerySubscriptionService
        from nodegraph.schema import SYSTEM_FIELDS

        if backend.backend_type == "graph":
            pytest.skip("graph backend only accepts typed supertags")

        await backend.init()
        base = await backend.create_node(content="Base")
        child = await backend.create_node(content="Child")
        await backend.link_nodes(child, SYSTEM_FIELDS.EXTENDS, base)
        node = await backend.create_node(content="n")
        await backend.add_node_supertag(node, child)

        service = QuerySubscriptionService(backend)
        changes = []
        handle = await service.subscribe(
            {"filters": [{"type": "supertag", "supertagSystemId": base}]},
            changes.append,
        )
        assert [n.id for n in handle.get_last_results()] == [node]

        await backend.delete_node(child)

        assert handle.get_last_results() == []
        assert [n.id for n in changes[-1].removed] == [node]
        await backend.close()


class TestAggregation:
    """Test aggregate computation."""

    def test_count(self):
        """COUNT is never null and prefers the pre-limit total."""
        from nodegraph.reactive.computed import AggregationType, compute_aggregation

        assert compute_aggregation([], AggregationType.COUNT) == 0
        nodes = [make_node("a"), make_node("b")]
        assert compute_aggregation(nodes, AggregationType.COUNT) == 2
        assert compute_aggregation(nodes, AggregationType.COUNT, total_count=10) == 10

    def test_null_vs_zero(self):
        """Numeric aggregates with no usable values are None, not 0."""
        from nodegraph.reactive.computed import AggregationType, compute_aggregation

        nodes = [make_node("a"), make_node("b", price="n/a")]
        for aggregation in (AggregationType.SUM, AggregationType.AVG, AggregationType.MIN, AggregationType.MAX):
            assert compute_aggregation(nodes, aggregation, "field:price") is None
        assert compute_aggregation([make_node("a", price=1)], AggregationType.SUM) is None

    def test_numeric_aggregates(self):
        """Numeric strings are coerced; other values are skipped."""
        from nodegraph.reactive.computed import AggregationType, compute_aggregation

        nodes = [
            make_node("a", price=2),
            make_node("b", price="4"),
            make_node("c", price=True),
            make_node("d", price="cheap"),
            make_node("e"),
        ]
        assert compute_aggregation(nodes, AggregationType.SUM, "field:price") == 6
        assert compute_aggregation(nodes, AggregationType.AVG, "field:price") == 3
        assert compute_aggregation(nodes, AggregationType.MIN, "price") == 2
        assert compute_aggregation(nodes, AggregationType.MAX, "price-node") == 4

    def test_extract_numeric(self):
        """Only finite numbers are usable."""
        from nodegraph.reactive.computed import extract_numeric

        assert extract_numeric(make_node("a", v=" 4.5 "), "v") == 4.5
        assert extract_numeric(make_node("a", v="inf"), "v") is None
        assert extract_numeric(make_node("a", v=float("nan")), "v") is None
        assert extract_numeric(make_node("a", v=[1]), "v") is None
        assert extract_numeric(make_node("a", v=False), "v") is None
        assert extract_numeric(make_node("a"), "v") is None

    def test_definition_parsing(self):
        """Aggregation names are case-insensitive; fieldId is camelCase on the wire."""
        from nodegraph.exceptions import ValidationError
        from nodegraph.reactive.computed import AggregationType, parse_computed_definition

        definition = parse_computed_definition({
            "query": TOOL_QUERY,
            "aggregation": "sum",
            "fieldId": "field:order",
        })
        assert definition.aggregation == AggregationType.SUM
        assert definition.field_id == "field:order"
        assert definition.to_json()["fieldId"] == "field:order"

        with pytest.raises(ValidationError):
            parse_computed_definition({"query": TOOL_QUERY, "aggregation": "MEDIAN"})


class TestComputedFields:
    """Test the computed field service."""

    @pytest.fixture
    def services(self, backend):
        """Backend plus subscription and computed-field services (uninitialized)."""
        from nodegraph.reactive.computed import ComputedFieldService
        from nodegraph.reactive.subscriptions import QuerySubscriptionService

        subscriptions = QuerySubscriptionService(backend)
        return backend, ComputedFieldService(backend, subscriptions)

    @pytest.mark.asyncio
    async def test_count_tracks_query(self, services):
        """COUNT starts at 0 and follows the query."""
        backend, computed = services
        await backend.init()

        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})
        assert await computed.get_value(cf) == 0

        await make_tool(backend, "one")
        await make_tool(backend, "two")
        assert await computed.get_value(cf) == 2

        node = await backend.find_node_by_id(cf)
        assert node.first("field:computed_field_value") == 2
        assert node.first("field:computed_field_updated_at") is not None
        await backend.close()

    @pytest.mark.asyncio
    async def test_sum_null_until_values(self, services):
        """SUM is null while no match has a numeric value."""
        from nodegraph.schema import SYSTEM_FIELDS

        backend, computed = services
        await backend.init()
        tool = await make_tool(backend, "no order yet")

        cf = await computed.create("Order sum", {
            "query": TOOL_QUERY,
            "aggregation": "SUM",
            "fieldId": SYSTEM_FIELDS.ORDER,
        })
        assert await computed.get_value(cf) is None

        await backend.set_property(tool, SYSTEM_FIELDS.ORDER, "3")
        assert await computed.get_value(cf) == 3

        await make_tool(backend, "more", **{SYSTEM_FIELDS.ORDER: 2})
        assert await computed.get_value(cf) == 5
        await backend.close()

    @pytest.mark.asyncio
    async def test_rehydration(self, services):
        """clear() then initialize() restores live values without new writes."""
        backend, computed = services
        await backend.init()
        await make_tool(backend, "one")
        await make_tool(backend, "two")

        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})
        assert await computed.get_value(cf) == 2

        computed.clear()
        assert computed.active_count() == 0
        assert await computed.get_value(cf) == 2

        assert await computed.initialize() == 1
        assert await computed.get_value(cf) == 2

        await make_tool(backend, "three")
        assert await computed.get_value(cf) == 3
        await backend.close()

    @pytest.mark.asyncio
    async def test_value_listeners(self, services):
        """Listeners see real changes only; one failing listener does not block others."""
        backend, computed = services
        await backend.init()
        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})

        def broken(change):
            raise RuntimeError("listener failure")

        received = []
        computed.on_value_change(cf, broken)
        unsubscribe = computed.on_value_change(cf, received.append)

        tool = await make_tool(backend, "one")
        assert [(c.previous_value, c.value) for c in received] == [(0, 1)]
        assert received[0].computed_field_id == cf

        # Edits that keep the count do not notify
        await backend.update_node_content(tool, "renamed")
        assert len(received) == 1

        unsubscribe()
        await make_tool(backend, "two")
        assert len(received) == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_recompute_activates_lazily(self, services):
        """recompute() activates an inactive field; unknown ids raise."""
        from nodegraph.exceptions import NotFoundError

        backend, computed = services
        await backend.init()
        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})
        computed.clear()

        await make_tool(backend, "while inactive")
        assert await computed.get_value(cf) == 0

        assert await computed.recompute(cf) == 1
        assert computed.active_count() == 1
        assert await computed.get_value(cf) == 1

        with pytest.raises(NotFoundError):
            await computed.recompute("missing")
        await backend.close()

    @pytest.mark.asyncio
    async def test_delete(self, services):
        """Deleting drops the subscription and soft-deletes the node."""
        backend, computed = services
        await backend.init()
        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})
        assert computed.subscriptions.subscription_count() == 1

        await computed.delete(cf)

        assert computed.active_count() == 0
        assert computed.subscriptions.subscription_count() == 0
        assert await computed.get_value(cf) is None
        assert await computed.get_all() == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_get_all_and_broken_definitions(self, services):
        """initialize() skips fields whose definition no longer parses."""
        from nodegraph.reactive.computed import AggregationType
        from nodegraph.schema import SYSTEM_FIELDS, SYSTEM_SUPERTAGS

        backend, computed = services
        await backend.init()
        await backend.create_node(
            content="broken",
            supertag_system_id=SYSTEM_SUPERTAGS.COMPUTED_FIELD,
            properties={SYSTEM_FIELDS.COMPUTED_FIELD_DEFINITION: {"query": {}, "aggregation": "MEDIAN"}},
        )
        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})
        computed.clear()

        assert await computed.initialize() == 1

        fields = {f.name: f for f in await computed.get_all()}
        assert fields["broken"].definition is None
        assert fields["broken"].active is False
        assert fields["Tool count"].id == cf
        assert fields["Tool count"].definition.aggregation == AggregationType.COUNT
        assert fields["Tool count"].value == 0
        assert fields["Tool count"].active is True
        await backend.close()

    @pytest.mark.asyncio
    async def test_duplicate_listener_called_once(self, services):
        """Registering the same listener twice still notifies it once per change."""
        backend, computed = services
        await backend.init()
        cf = await computed.create("Tool count", {"query": TOOL_QUERY, "aggregation": "COUNT"})

        received = []
        first = computed.on_value_change(cf, received.append)
        second = computed.on_value_change(cf, received.append)

        await make_tool(backend, "one")
        assert [c.value for c in received] == [1]

        first()
        second()
        await make_tool(backend, "two")
        assert [c.value for c in received] == [1]
        await backend.close()

    @pytest.mark.asyncio
    async def test_count_with_limit_follows_deletions(self, services):
        """COUNT over a limited query tracks deletions outside the limit."""
        backend, computed = services
        await backend.init()
        ids = [await make_tool(backend, name) for name in ("a", "b", "c")]

        cf = await computed.create("Tool count", {
            "query": {**TOOL_QUERY, "limit": 1},
            "aggregation": "COUNT",
        })
        assert await computed.get_value(cf) == 3

        await backend.delete_node(ids[2])

        fresh = await backend.evaluate_query({**TOOL_QUERY, "limit": 1})
        assert fresh.total_count == 2
        assert await computed.get_value(cf) == 2
        await backend.close()
