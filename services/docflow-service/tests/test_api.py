"""Tests for the HTTP surface: health, action dispatch and patch runs."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from docflow.events.topics import PATCH_LOGICS_TOPIC
from docflow.logics.dispatch import LogicConfig
from docflow.main import app
from docflow.models import LogicResult, LogicResultDoc, LogicResultDocAction as A, LogicResultStatus

ACTION_BODY = {
    "actionType": "create",
    "eventContext": {"id": "evt-1", "docId": "p1", "docPath": "servers/s1/posts/p1", "entity": "post"},
    "document": {"text": "hi"},
}


async def _stamp_post(txn_get, action, shared_map, next_page):
    return LogicResult(
        name="StampPost",
        status=LogicResultStatus.FINISHED,
        documents=[LogicResultDoc(action=A.MERGE, dst_path=action.event_context.doc_path, doc={"stamped": True})],
    )


@pytest.fixture
def client():
    # lifespan is not entered; the engine is installed by each test
    yield TestClient(app)
    app.state.engine = None


class TestHealth:
    def test_health_and_version(self, client):
        assert client.get("/health").json()["status"] == "ok"
        assert "version" in client.get("/version").json()

    def test_ready_reports_starting_without_engine(self, client):
        app.state.engine = None
        assert client.get("/ready").json()["status"] == "starting"

    def test_ready_with_engine(self, client, make_engine):
        app.state.engine = make_engine()
        body = client.get("/ready").json()
        assert body["status"] == "ready"
        assert body["entities"] == 4
        assert body["viewDefinitions"] == 3


class TestActions:
    def test_engine_missing_is_503(self, client):
        app.state.engine = None
        assert client.post("/actions", json=ACTION_BODY).status_code == 503

    def test_dispatch_without_logics(self, client, make_engine):
        app.state.engine = make_engine()
        body = client.post("/actions", json=ACTION_BODY).json()
        assert body == {"eventId": "evt-1", "status": "no-matching-logics", "pages": 0, "logicResults": []}

    def test_dispatch_runs_logics(self, client, make_engine, store):
        app.state.engine = make_engine(logic_configs=[LogicConfig(name="StampPost", logic_fn=_stamp_post)])

        body = client.post("/actions", json=ACTION_BODY).json()

        assert body["status"] == "done"
        assert body["pages"] == 1
        (summary,) = body["logicResults"]
        assert summary["name"] == "StampPost"
        assert summary["documents"] == 1
        assert store.dump()["servers/s1/posts/p1"]["stamped"] is True

    def test_invalid_action_is_422(self, client, make_engine):
        app.state.engine = make_engine()
        assert client.post("/actions", json={"actionType": "create"}).status_code == 422


class TestPatches:
    def test_queue_patches(self, client, make_engine, publisher):
        app.state.engine = make_engine()
        body = client.post(
            "/patches", json={"dstPaths": ["users/u1", "users/u2"], "appVersion": "2.0.0", "queue": True},
        ).json()

        assert body == {"status": "queued", "appVersion": "2.0.0", "count": 2}
        assert [m["dstPath"] for m in publisher.by_topic(PATCH_LOGICS_TOPIC)] == ["users/u1", "users/u2"]

    def test_empty_paths_rejected(self, client, make_engine):
        app.state.engine = make_engine()
        assert client.post("/patches", json={"dstPaths": []}).status_code == 422
