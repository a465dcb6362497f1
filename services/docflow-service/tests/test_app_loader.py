"""Tests for docflow.app_loader."""

from __future__ import annotations

import sys
import types

import pytest

from docflow.app_loader import load_app_module
from docflow.core.errors import DocflowError


class TestLoadAppModule:
    def test_sample_app(self):
        app = load_app_module("docflow.seeds.sample_app")
        assert [e.value for e in app.entities] == ["user", "friend", "server", "post", "comment"]
        assert [c.name for c in app.logic_configs] == ["CountServerPosts", "CascadeUserDelete"]
        assert [p.name for p in app.patch_logic_configs] == ["SplitUserName"]

    def test_missing_declarations(self, monkeypatch):
        module = types.ModuleType("incomplete_app")
        module.ENTITIES = ["user"]
        monkeypatch.setitem(sys.modules, "incomplete_app", module)

        with pytest.raises(DocflowError, match="DB_STRUCTURE"):
            load_app_module("incomplete_app")

    def test_optional_logics_default_to_empty(self, monkeypatch):
        module = types.ModuleType("bare_app")
        module.ENTITIES = ["user"]
        module.DB_STRUCTURE = {"users": {"user": {}}}
        monkeypatch.setitem(sys.modules, "bare_app", module)

        app = load_app_module("bare_app")
        assert app.logic_configs == []
        assert app.patch_logic_configs == []
