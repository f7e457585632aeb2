"""Tests for core.types module."""

from core.types import ErrorCategory


class TestErrorCategory:
    def test_values(self):
        assert ErrorCategory.TRANSIENT.value == "transient"
        assert ErrorCategory.AUTH.value == "auth"
        assert ErrorCategory.PERMANENT.value == "permanent"
        assert ErrorCategory.UNKNOWN.value == "unknown"

    def test_from_value(self):
        assert ErrorCategory("permanent") is ErrorCategory.PERMANENT

    def test_is_str(self):
        assert ErrorCategory.AUTH == "auth"
