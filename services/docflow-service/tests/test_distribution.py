"""Tests for docflow.core.distribution and docflow.core.instructions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from docflow.core.consolidation import Consolidator
from docflow.core.counters import GlobalCounters, next_count
from docflow.core.distribution import Distributor, build_write_op
from docflow.core.errors import InvalidInstructionError
from docflow.core.instructions import (
    convert_instructions,
    merge_instructions,
    parse_array_params,
    parse_global_counter,
    parse_increment,
)
from docflow.core.paths import PathResolver
from docflow.db.memory_store import MemoryDocumentStore
from docflow.db.store import WriteKind
from docflow.events.topics import FOR_DISTRIBUTION_TOPIC, INSTRUCTIONS_TOPIC, SUBMIT_FORM_TOPIC
from docflow.models import LogicResult, LogicResultDoc, LogicResultDocAction as A, LogicResultStatus, Priority


# ── instructions ─────────────────────────────────────────────────────


class TestInstructions:
    def test_increments(self):
        assert parse_increment("n", "++") == 1
        assert parse_increment("n", "--") == -1
        assert parse_increment("n", "+5") == 5
        assert parse_increment("n", "-2.5") == -2.5

    def test_bad_increment_raises(self):
        with pytest.raises(InvalidInstructionError):
            parse_increment("n", "*3")

    def test_array_params(self):
        assert parse_array_params("t", "arr+(a,b)") == (["a", "b"], [])
        assert parse_array_params("t", "arr-(a)") == ([], ["a"])
        assert parse_array_params("t", "arr(+a,-b,c)") == (["a", "c"], ["b"])

    def test_convert_skips_invalid_opcodes(self):
        transforms = convert_instructions({"n": "++", "bad": "??", "tags": "arr(+x,-y)", "gone": "del"})
        assert transforms.increments == {"n": 1}
        assert transforms.array_union == {"tags": ["x"]}
        assert transforms.array_remove == {"tags": ["y"]}
        assert transforms.unset == ["gone"]
        assert transforms.fields() == ["gone", "n", "tags"]

    def test_global_counter(self):
        assert parse_global_counter("no", "globalCounter(orders)") == ("orders", None)
        assert parse_global_counter("no", "globalCounter(orders, 99)") == ("orders", 99)
        with pytest.raises(InvalidInstructionError):
            parse_global_counter("no", "globalCounter()")
        assert convert_instructions({"no": "globalCounter(orders,5)"}).counters == {"no": ("orders", 5)}


class TestMergeInstructions:
    def test_increments_net_out(self):
        assert merge_instructions({"n": "+2"}, {"n": "--"}) == {"n": "+1"}
        assert merge_instructions({"n": "++"}, {"n": "-3"}) == {"n": "-2"}
        assert merge_instructions({"n": "++", "m": "++"}, {"n": "--"}) == {"m": "++"}

    def test_array_values_net_out(self):
        assert merge_instructions({"t": "arr(+a,+b)"}, {"t": "arr-(a)"}) == {"t": "arr(+b)"}
        assert merge_instructions({"t": "arr+(a)"}, {"t": "arr(-a)"}) == {}

    def test_delete_precedence(self):
        assert merge_instructions({"n": "del"}, {"n": "++"}) == {"n": "del"}
        assert merge_instructions({"n": "++"}, {"n": "del"}) == {"n": "del"}

    def test_conflict_keeps_existing(self, caplog):
        with caplog.at_level("WARNING", logger="docflow.instructions"):
            assert merge_instructions({"n": "++"}, {"n": "arr(+a)"}, "users/u1") == {"n": "++"}
        assert any("Conflicting instructions" in r.getMessage() for r in caplog.records)

    def test_inputs_are_not_modified(self):
        existing = {"n": "++"}
        merge_instructions(existing, {"n": "++"})
        assert existing == {"n": "++"}
        assert merge_instructions(None, None) is None


# ── write ops ────────────────────────────────────────────────────────


class TestBuildWriteOp:
    def test_create_stamps_id_and_creation_time(self):
        op = build_write_op(LogicResultDoc(action=A.CREATE, dst_path="users/u1", doc={"name": "Ann"}))
        assert op.kind == WriteKind.MERGE
        assert op.data["@id"] == "u1"
        assert op.data["name"] == "Ann"
        assert isinstance(op.data["@dateCreated"], datetime)

    def test_map_property_merge_is_prefixed(self):
        op = build_write_op(LogicResultDoc(action=A.MERGE, dst_path="servers/s1#createdBy", doc={"name": "Ann"}))
        assert op.path == "servers/s1"
        assert op.data == {"createdBy.name": "Ann"}

    def test_array_map_entry_merge_is_prefixed(self):
        op = build_write_op(LogicResultDoc(
            action=A.MERGE, dst_path="servers/s1#members[u1]", doc={"name": "Ann"}, instructions={"visits": "++"},
        ))
        assert op.data == {"members.u1.name": "Ann"}
        assert op.increments == {"members.u1.visits": 1}

    def test_instructions_win_over_doc_fields(self):
        op = build_write_op(LogicResultDoc(
            action=A.MERGE, dst_path="users/u1", doc={"count": 10, "name": "Ann"}, instructions={"count": "++"},
        ))
        assert "count" not in op.data
        assert op.increments == {"count": 1}

    def test_deletes(self):
        assert build_write_op(LogicResultDoc(action=A.DELETE, dst_path="users/u1")).kind == WriteKind.DELETE
        entry = build_write_op(LogicResultDoc(action=A.DELETE, dst_path="servers/s1#members[u1]"))
        assert entry.kind == WriteKind.MERGE and entry.unset == ["members.u1"]
        prop = build_write_op(LogicResultDoc(action=A.DELETE, dst_path="servers/s1#createdBy"))
        assert prop.unset == ["createdBy"]

    def test_empty_property_merge_is_skipped(self):
        assert build_write_op(LogicResultDoc(action=A.MERGE, dst_path="servers/s1#createdBy", doc={})) is None


# ── distributor ──────────────────────────────────────────────────────


@pytest.fixture
def distributor(registry, publisher):
    def _make(store):
        return Distributor(store, Consolidator(PathResolver(registry, store)), publisher, batch_size=50)
    return _make


class TestDistributor:
    async def test_non_transactional_writes_land_in_store(self, distributor):
        store = MemoryDocumentStore({"servers/s1": {"title": "one", "members": {"u1": {"name": "Ann"}}}})
        dist = distributor(store)

        grouped = await dist.consolidator.expand_consolidate_and_group_by_dst_path([
            LogicResultDoc(action=A.MERGE, dst_path="servers/s1", instructions={"postCount": "+2"}),
            LogicResultDoc(action=A.DELETE, dst_path="servers/s1#members[u1]"),
            LogicResultDoc(action=A.CREATE, dst_path="users/u2", doc={"name": "Bob"}),
        ])
        written = await dist.distribute_non_transactional(grouped)

        assert len(written) == 3
        data = store.dump()
        assert data["servers/s1"]["postCount"] == 2
        assert data["servers/s1"]["members"] == {}
        assert data["users/u2"]["name"] == "Bob"

    async def test_submit_form_is_published(self, distributor, publisher):
        dist = distributor(MemoryDocumentStore())
        await dist.distribute_doc(LogicResultDoc(action=A.SUBMIT_FORM, dst_path="users/u1", doc={"name": "X"}))
        assert publisher.by_topic(SUBMIT_FORM_TOPIC) == [{"name": "X", "@docPath": "users/u1"}]

    async def test_transactional_results_skip_submit_forms(self, distributor, publisher):
        store = MemoryDocumentStore()
        dist = distributor(store)
        results = [
            LogicResult(
                name="t",
                status=LogicResultStatus.FINISHED,
                transactional=True,
                documents=[
                    LogicResultDoc(action=A.MERGE, dst_path="users/u1", doc={"name": "Ann"}),
                    LogicResultDoc(action=A.SUBMIT_FORM, dst_path="users/u1", doc={"x": 1}),
                ],
            ),
            LogicResult(
                name="n",
                status=LogicResultStatus.FINISHED,
                documents=[LogicResultDoc(action=A.MERGE, dst_path="users/u2", doc={"name": "Bob"})],
            ),
        ]

        async def _txn(txn):
            return await dist.distribute_transactional(txn, results)

        await store.run_transaction(_txn)
        assert store.dump()["users/u1"]["name"] == "Ann"
        assert "users/u2" not in store.dump()
        assert publisher.by_topic(SUBMIT_FORM_TOPIC) == []

    async def test_deferred_intents_climb_priorities(self, distributor, publisher):
        store = MemoryDocumentStore()
        dist = distributor(store)
        doc = LogicResultDoc(action=A.MERGE, dst_path="users/u1", doc={"name": "Ann"}, priority=Priority.LOW)

        await dist.queue_for_distribution_later([doc], "1.0.0")
        (message,) = publisher.take()
        assert message[0] == FOR_DISTRIBUTION_TOPIC
        assert message[1]["targetVersion"] == "1.0.0"

        assert await dist.on_for_distribution_message(message[1]) == []
        (bumped,) = publisher.take()
        assert bumped[1]["logicResultDoc"]["priority"] == "normal"

        assert await dist.on_for_distribution_message(bumped[1]) == []
        (high,) = publisher.take()
        assert high[1]["logicResultDoc"]["priority"] == "high"

        written = await dist.on_for_distribution_message(high[1])
        assert [d.dst_path for d in written] == ["users/u1"]
        assert store.dump()["users/u1"]["name"] == "Ann"


# ── global counters ──────────────────────────────────────────────────


class TestGlobalCounters:
    def test_next_count_rules(self):
        now = datetime(2024, 1, 2, 12, tzinfo=timezone.utc)
        assert next_count(None, None, now) == 1
        assert next_count({"count": 4, "lastUpdatedAt": now - timedelta(hours=1)}, None, now) == 5
        assert next_count({"count": 5, "lastUpdatedAt": now - timedelta(hours=1)}, 5, now) == 1
        assert next_count({"count": 4, "lastUpdatedAt": now - timedelta(days=1)}, None, now) == 1

    async def test_counter_values_are_written(self, distributor):
        store = MemoryDocumentStore()
        dist = distributor(store)
        for oid in ["o1", "o2"]:
            await dist.distribute_doc(LogicResultDoc(
                action=A.CREATE, dst_path=f"orders/{oid}", instructions={"number": "globalCounter(orders)"},
            ))

        data = store.dump()
        assert data["orders/o1"]["number"] == 1
        assert data["orders/o2"]["number"] == 2
        assert data["@counters/orders"]["count"] == 2

    async def test_written_intent_carries_the_value(self, distributor):
        store = MemoryDocumentStore({"servers/s1": {"title": "one"}})
        dist = distributor(store)

        written = await dist.distribute_doc(LogicResultDoc(
            action=A.MERGE,
            dst_path="servers/s1#stats",
            instructions={"seq": "globalCounter(stats, 10)", "n": "++"},
        ))
        assert written.doc == {"seq": 1}
        assert written.instructions == {"n": "++"}
        assert store.dump()["servers/s1"]["stats"] == {"seq": 1, "n": 1}

    async def test_counter_inside_transaction(self, distributor):
        store = MemoryDocumentStore({"@counters/orders": {"count": 7, "lastUpdatedAt": datetime.now(timezone.utc)}})
        dist = distributor(store)
        doc = LogicResultDoc(action=A.CREATE, dst_path="orders/o9", instructions={"number": "globalCounter(orders)"})

        await store.run_transaction(lambda txn: dist.distribute_doc(doc, txn=txn))
        assert store.dump()["orders/o9"]["number"] == 8
        assert store.dump()["@counters/orders"]["count"] == 8

    async def test_shared_counters_object(self):
        store = MemoryDocumentStore()
        counters = GlobalCounters(store)
        assert [await counters.next_value("c", 2) for _ in range(3)] == [1, 2, 1]


# ── instructions queue ───────────────────────────────────────────────


class TestInstructionsQueue:
    def _distributor(self, registry, publisher, store, window):
        return Distributor(
            store,
            Consolidator(PathResolver(registry, store)),
            publisher,
            batch_size=50,
            queue_instructions=True,
            instructions_window_seconds=window,
        )

    async def test_queued_instructions_are_netted_per_path(self, registry, publisher):
        store = MemoryDocumentStore({"servers/s1": {"postCount": 10}})
        dist = self._distributor(registry, publisher, store, window=60)

        for opcode in ["++", "++", "--"]:
            await dist.distribute_doc(LogicResultDoc(
                action=A.MERGE, dst_path="servers/s1", doc={"title": "x"}, instructions={"postCount": opcode},
            ))
        assert store.dump()["servers/s1"]["postCount"] == 10
        assert store.dump()["servers/s1"]["title"] == "x"

        for payload in publisher.by_topic(INSTRUCTIONS_TOPIC):
            dist.reducer.add(payload["dstPath"], payload["instructions"])
        assert dist.reducer.pending == {"servers/s1": {"postCount": "+1"}}

        applied = await dist.reducer.flush()
        assert [(d.dst_path, d.instructions) for d in applied] == [("servers/s1", {"postCount": "+1"})]
        assert store.dump()["servers/s1"]["postCount"] == 11
        assert dist.reducer.pending == {}

    async def test_zero_window_applies_each_message(self, registry, publisher):
        store = MemoryDocumentStore({"servers/s1": {"postCount": 10}})
        dist = self._distributor(registry, publisher, store, window=0)

        await dist.reducer.on_instructions_message({"dstPath": "servers/s1", "instructions": {"postCount": "+5"}})
        assert store.dump()["servers/s1"]["postCount"] == 15

    async def test_close_flushes_the_open_window(self, registry, publisher):
        store = MemoryDocumentStore({"servers/s1": {"tags": ["a"]}})
        dist = self._distributor(registry, publisher, store, window=60)

        await dist.reducer.on_instructions_message({"dstPath": "servers/s1", "instructions": {"tags": "arr(+b)"}})
        await dist.reducer.on_instructions_message({"dstPath": "servers/s1", "instructions": {"tags": "arr(-a)"}})
        assert store.dump()["servers/s1"]["tags"] == ["a"]

        await dist.reducer.close()
        assert store.dump()["servers/s1"]["tags"] == ["b"]

    async def test_transactional_writes_bypass_the_queue(self, registry, publisher):
        store = MemoryDocumentStore()
        dist = self._distributor(registry, publisher, store, window=60)
        doc = LogicResultDoc(action=A.MERGE, dst_path="servers/s1", instructions={"postCount": "++"})

        await store.run_transaction(lambda txn: dist.distribute_doc(doc, txn=txn))
        assert store.dump()["servers/s1"]["postCount"] == 1
        assert publisher.by_topic(INSTRUCTIONS_TOPIC) == []
