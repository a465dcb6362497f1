"""Tests for docflow.schema: view markers and schema compilation."""

from __future__ import annotations

import re

import pytest

from docflow.core.errors import SchemaError
from docflow.models import DestPropType
from docflow.schema import (
    ViewMarkerKind,
    compile_schema,
    parse_view_marker,
    traverse_bfs,
    view,
    view_array_map,
    view_map,
)


CHAT_ENTITIES = ["user", "friend", "server", "channel", "message", "member"]

CHAT_STRUCTURE = {
    "users": {
        "user": {
            "friends": {"friend": [view("user", ["name"])]},
        },
    },
    "servers": {
        "server": {
            "createdBy": view_map("user", ["name", "avatarUrl"]),
            "channels": {
                "channel": {
                    "messages": {"message": {}},
                },
            },
            "members": {"member": [view("user", ["name"], sync_create=True)]},
        },
    },
}


# ── markers ──────────────────────────────────────────────────────────


class TestViewMarkers:
    def test_serialize_plain_view(self):
        assert view("user", ["name", "email"]).serialize() == "View@0.0.0:user:name,email"

    def test_serialize_with_options_and_version(self):
        marker = view_array_map("user", ["name"], version="2.1.0", sync_create=True, peer_sync=True)
        assert marker.serialize() == "ViewArrayMap@2.1.0:user:name:syncCreate=true,peerSync=true"

    def test_parse_string_form(self):
        marker = parse_view_marker("ViewMap@1.0.0:user:name,avatarUrl:syncCreate=true")
        assert marker.kind == ViewMarkerKind.MAP
        assert marker.src_entity == "user"
        assert marker.src_props == ("name", "avatarUrl")
        assert marker.version == "1.0.0"
        assert marker.sync_create is True
        assert marker.peer_sync is False

    def test_parse_empty_props(self):
        assert parse_view_marker("View@0.0.0:user:").src_props == ()

    def test_unknown_option_is_dropped(self):
        marker = parse_view_marker("View@0.0.0:user:name:bogus=true,peerSync=true")
        assert marker.peer_sync is True
        assert marker.sync_create is False

    def test_non_boolean_option_is_dropped(self):
        marker = parse_view_marker("View@0.0.0:user:name:syncCreate=yes")
        assert marker.sync_create is False

    def test_malformed_marker_raises(self):
        with pytest.raises(SchemaError):
            parse_view_marker("View:user")


# ── compilation ──────────────────────────────────────────────────────


class TestCompileSchema:
    def test_users_friends_scenario(self):
        registry = compile_schema(
            {"users": {"user": {"friends": {"friend": [view("user", ["name", "email"])]}}}},
            ["user", "friend"],
        )

        assert registry.doc_paths["user"] == "users/{userId}"
        assert registry.doc_paths["friend"] == "users/{userId}/friends/{friendId}"
        assert registry.col_paths["friend"] == "users/{userId}/friends"

        assert len(registry.view_definitions) == 1
        vd = registry.view_definitions[0]
        assert vd.src_entity == "user"
        assert vd.src_props == ["name", "email"]
        assert vd.dest_entity == "friend"
        assert vd.dest_prop is None
        assert vd.version == "0.0.0"

    def test_every_entity_has_one_template_ending_in_its_placeholder(self):
        registry = compile_schema(CHAT_STRUCTURE, CHAT_ENTITIES)
        for entity in CHAT_ENTITIES:
            template = registry.doc_paths[entity]
            assert template.rsplit("/", 1)[-1] == f"{{{entity}Id}}"

    def test_patterns_are_mutually_exclusive(self):
        registry = compile_schema(CHAT_STRUCTURE, CHAT_ENTITIES)
        samples = [
            "users/u1",
            "users/u1/friends/u2",
            "servers/s1",
            "servers/s1/channels/c1",
            "servers/s1/channels/c1/messages/m1",
            "servers/s1/members/u1",
        ]
        for path in samples:
            matches = [e for e, rx in registry.doc_path_patterns.items() if rx.match(path)]
            assert len(matches) == 1, (path, matches)

    def test_property_views(self):
        registry = compile_schema(CHAT_STRUCTURE, CHAT_ENTITIES)
        created_by = registry.view_definitions_for(dest_entity="server")
        assert len(created_by) == 1
        assert created_by[0].dest_prop.name == "createdBy"
        assert created_by[0].dest_prop.type == DestPropType.MAP

    def test_array_map_property_view(self):
        registry = compile_schema(
            {"servers": {"server": {"members": [view_array_map("user", ["name"])]}}, "users": {"user": {}}},
            ["server", "user"],
        )
        (vd,) = registry.view_definitions
        assert vd.dest_entity == "server"
        assert vd.dest_prop.name == "members"
        assert vd.dest_prop.type == DestPropType.ARRAY_MAP

    def test_sync_create_option_is_carried(self):
        registry = compile_schema(CHAT_STRUCTURE, CHAT_ENTITIES)
        (member_view,) = registry.view_definitions_for(dest_entity="member")
        assert member_view.options.sync_create is True
        assert member_view.options.peer_sync is False

    def test_string_markers_compile_like_builders(self):
        built = compile_schema(CHAT_STRUCTURE, CHAT_ENTITIES)
        textual = compile_schema(
            {
                "users": {"user": {"friends": {"friend": ["View@0.0.0:user:name"]}}},
                "servers": {
                    "server": {
                        "createdBy": "ViewMap@0.0.0:user:name,avatarUrl",
                        "channels": {"channel": {"messages": {"message": {}}}},
                        "members": {"member": ["View@0.0.0:user:name:syncCreate=true"]},
                    },
                },
            },
            CHAT_ENTITIES,
        )
        assert dict(textual.doc_paths) == dict(built.doc_paths)
        assert list(textual.view_definitions) == list(built.view_definitions)

    def test_unknown_source_entity_is_skipped(self):
        registry = compile_schema(
            {"users": {"user": {"friends": {"friend": [view("ghost", ["name"])]}}}},
            ["user", "friend"],
        )
        assert registry.view_definitions == ()

    def test_enum_entities_are_accepted(self):
        from docflow.seeds.sample_app import DB_STRUCTURE, ENTITIES

        registry = compile_schema(DB_STRUCTURE, ENTITIES)
        assert registry.doc_paths["comment"] == "servers/{serverId}/posts/{postId}/comments/{commentId}"
        assert {vd.logic_name for vd in registry.view_definitions} == {
            "friend", "server#createdBy", "server#members", "post#author",
        }

    def test_traverse_is_breadth_first(self):
        paths = traverse_bfs(CHAT_STRUCTURE)
        assert paths.index("users") < paths.index("users/user")
        assert paths.index("servers/server") < paths.index("servers/server/channels/channel")
        assert all(not re.search(r"=View.*/", p) for p in paths)


class TestRegistryLookups:
    def test_find_and_parse_entity(self, registry):
        assert registry.find_entity("users/u1/friends/u2") == "friend"
        assert registry.find_entity("users/u1/unknown/x") is None

        ref = registry.parse_entity("servers/s1/posts/p9")
        assert ref.entity == "post"
        assert ref.entity_id == "p9"
        assert ref.ids == {"serverId": "s1", "postId": "p9"}

    def test_sub_doc_paths_with_exclusion(self, registry):
        assert sorted(registry.sub_doc_paths("server")) == ["servers/{serverId}", "servers/{serverId}/posts/{postId}"]
        assert registry.sub_doc_paths("server", exclude=["post"]) == ["servers/{serverId}"]
