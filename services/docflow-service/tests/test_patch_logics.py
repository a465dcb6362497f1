"""Tests for docflow.logics.patch_logics: per-document data migrations."""

from __future__ import annotations

from typing import Any, Dict, List

from docflow.events.topics import PATCH_LOGICS_TOPIC
from docflow.logics.patch_logics import PatchLogicConfig
from docflow.models import LogicResult, LogicResultDoc, LogicResultDocAction as A, LogicResultStatus


def _patch(name: str, version: str, calls: List[str], **fields: Any) -> PatchLogicConfig:
    async def fn(dst_path: str, data: Dict[str, Any]) -> LogicResult:
        calls.append(name)
        return LogicResult(
            name=name,
            status=LogicResultStatus.FINISHED,
            documents=[LogicResultDoc(action=A.MERGE, dst_path=dst_path, doc=dict(fields))],
        )

    return PatchLogicConfig(name=name, entity="user", version=version, patch_logic_fn=fn)


class TestEligibility:
    def test_window_between_data_and_app_version(self):
        cfg = _patch("P", "2.0.0", [])
        assert cfg.is_eligible("0.0.0", "2.0.0")
        assert cfg.is_eligible("1.9.9", "3.0.0")
        assert not cfg.is_eligible("0.0.0", "1.5.0")
        assert not cfg.is_eligible("2.0.0", "3.0.0")


class TestPatchDispatch:
    async def test_only_versions_up_to_the_app_are_applied(self, make_engine, store):
        calls: List[str] = []
        engine = make_engine(patch_configs=[
            _patch("Two", "2.0.0", calls, two=True),
            _patch("One", "1.0.0", calls, one=True),
        ])
        await store.set("users/u1", {"@id": "u1", "name": "Ann"})

        results = await engine.dispatch_patch_logic("1.5.0", "users/u1")

        assert [r.name for r in results] == ["One"]
        data = store.dump()["users/u1"]
        assert data["one"] is True
        assert "two" not in data
        assert data["@dataVersion"] == "1.0.0"

        results = await engine.dispatch_patch_logic("2.0.0", "users/u1")
        assert [r.name for r in results] == ["Two"]
        assert calls == ["One", "Two"]
        assert store.dump()["users/u1"]["@dataVersion"] == "2.0.0"

    async def test_same_version_patches_share_a_transaction(self, make_engine, store):
        calls: List[str] = []
        engine = make_engine(patch_configs=[
            _patch("A", "1.0.0", calls, a=1),
            _patch("B", "1.0.0", calls, b=2),
        ])
        await store.set("users/u1", {"@id": "u1"})

        await engine.dispatch_patch_logic("1.0.0", "users/u1")

        data = store.dump()["users/u1"]
        assert (data["a"], data["b"], data["@dataVersion"]) == (1, 2, "1.0.0")
        assert store.commits == []

    async def test_rerun_is_a_noop(self, make_engine, store):
        calls: List[str] = []
        engine = make_engine(patch_configs=[_patch("One", "1.0.0", calls, one=True)])
        await store.set("users/u1", {"@id": "u1"})

        await engine.dispatch_patch_logic("1.0.0", "users/u1")
        assert await engine.dispatch_patch_logic("1.0.0", "users/u1") == []
        assert calls == ["One"]

    async def test_missing_document_or_unknown_path(self, make_engine):
        engine = make_engine(patch_configs=[_patch("One", "1.0.0", [])])
        assert await engine.dispatch_patch_logic("1.0.0", "users/nobody") == []
        assert await engine.dispatch_patch_logic("1.0.0", "nowhere/x") == []

    async def test_queued_patches_run_from_messages(self, make_engine, store, publisher, pump):
        calls: List[str] = []
        engine = make_engine(patch_configs=[_patch("One", "1.0.0", calls, one=True)])
        await store.set("users/u1", {"@id": "u1"})
        await store.set("users/u2", {"@id": "u2"})

        await engine.patches.queue_run_patch_logics("1.0.0", "users/u1", "users/u2")
        assert publisher.by_topic(PATCH_LOGICS_TOPIC) == [
            {"appVersion": "1.0.0", "dstPath": "users/u1"},
            {"appVersion": "1.0.0", "dstPath": "users/u2"},
        ]

        await pump(engine)
        assert calls == ["One", "One"]
        assert store.dump()["users/u2"]["@dataVersion"] == "1.0.0"

    async def test_sample_app_splits_names(self, store, publisher):
        from docflow.core.engine import DocflowEngine
        from docflow.seeds.sample_app import DB_STRUCTURE, ENTITIES, PATCH_LOGIC_CONFIGS

        engine = DocflowEngine.from_declaration(
            store, publisher, DB_STRUCTURE, ENTITIES, patch_configs=PATCH_LOGIC_CONFIGS,
        )
        await store.set("users/u1", {"@id": "u1", "name": "Ann Lee"})

        await engine.dispatch_patch_logic("1.0.0", "users/u1")

        data = store.dump()["users/u1"]
        assert (data["firstName"], data["lastName"]) == ("Ann", "Lee")
