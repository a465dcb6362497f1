"""Tests for docflow.core.versions."""

from __future__ import annotations

import pytest

from docflow.core.versions import version_compare


class TestVersionCompare:
    @pytest.mark.parametrize(
        "a, b, expected",
        [
            ("1.0.0", "1.0.0", 0),
            ("1.2", "1.10", -1),
            ("2.0.0", "1.9.9", 1),
            ("1.0", "1.0.0", 0),
            ("1.0.1", "1.0", 1),
            ("01.10", "1.2", 1),
            ("1.x.0", "1.0.0", 0),
            ("", "0.0.0", 0),
        ],
    )
    def test_compare(self, a, b, expected):
        assert version_compare(a, b) == expected

    def test_antisymmetric(self):
        assert version_compare("3.1", "3.2") == -version_compare("3.2", "3.1")
