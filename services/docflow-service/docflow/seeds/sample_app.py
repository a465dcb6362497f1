# services/docflow-service/docflow/seeds/sample_app.py
"""
Sample application: users with friends, servers with members and posts.

Any module named by APP_MODULE must expose ENTITIES, DB_STRUCTURE,
LOGIC_CONFIGS and PATCH_LOGIC_CONFIGS.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from docflow.logics.dispatch import LogicConfig
from docflow.logics.patch_logics import PatchLogicConfig
from docflow.models import Action, LogicResult, LogicResultDoc, LogicResultDocAction as A, LogicResultStatus
from docflow.schema.markers import view, view_array_map, view_map

logger = logging.getLogger("docflow.seeds")


class Entity(str, Enum):
    User = "user"
    Friend = "friend"
    Server = "server"
    Post = "post"
    Comment = "comment"


ENTITIES = list(Entity)

DB_STRUCTURE: Dict[str, Any] = {
    "users": {
        Entity.User.value: {
            "friends": {
                Entity.Friend.value: [view(Entity.User.value, ["name", "avatarUrl"], peer_sync=True)],
            },
        },
    },
    "servers": {
        Entity.Server.value: {
            "createdBy": view_map(Entity.User.value, ["name", "avatarUrl"]),
            "members": [view_array_map(Entity.User.value, ["name", "avatarUrl"])],
            "posts": {
                Entity.Post.value: {
                    "author": view_map(Entity.User.value, ["name"]),
                    "comments": {
                        Entity.Comment.value: {},
                    },
                },
            },
        },
    },
}


# ─────────────────────────────────────────────────────────────
# Business logics
# ─────────────────────────────────────────────────────────────

async def count_server_posts(txn_get, action: Action, shared_map: Dict[str, Any],
                             next_page: Optional[Dict[str, Any]]) -> LogicResult:
    server_path = action.event_context.doc_path.rsplit("/posts/", 1)[0]
    sign = "++" if action.action_type == "create" else "--"
    return LogicResult(
        name="CountServerPosts",
        status=LogicResultStatus.FINISHED,
        documents=[LogicResultDoc(action=A.MERGE, dst_path=server_path, instructions={"postCount": sign})],
    )


async def cascade_user_delete(txn_get, action: Action, shared_map: Dict[str, Any],
                              next_page: Optional[Dict[str, Any]]) -> LogicResult:
    return LogicResult(
        name="CascadeUserDelete",
        status=LogicResultStatus.FINISHED,
        documents=[LogicResultDoc(action=A.RECURSIVE_DELETE, dst_path=action.event_context.doc_path)],
    )


LOGIC_CONFIGS = [
    LogicConfig(
        name="CountServerPosts",
        action_types=["create", "delete"],
        entities=[Entity.Post.value],
        logic_fn=count_server_posts,
    ),
    LogicConfig(
        name="CascadeUserDelete",
        action_types=["delete"],
        entities=[Entity.User.value],
        logic_fn=cascade_user_delete,
    ),
]


# ─────────────────────────────────────────────────────────────
# Patch logics
# ─────────────────────────────────────────────────────────────

async def split_user_name(dst_path: str, data: Dict[str, Any]) -> LogicResult:
    name = data.get("name") or ""
    first, _, last = name.partition(" ")
    return LogicResult(
        name="SplitUserName",
        status=LogicResultStatus.FINISHED,
        documents=[LogicResultDoc(action=A.MERGE, dst_path=dst_path, doc={"firstName": first, "lastName": last})],
    )


PATCH_LOGIC_CONFIGS = [
    PatchLogicConfig(name="SplitUserName", entity=Entity.User.value, version="1.0.0", patch_logic_fn=split_user_name),
]
