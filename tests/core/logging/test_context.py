"""Tests for core.logging.context module."""

from core.logging.context import clear_log_context, get_log_context, set_log_context


class TestLogContext:
    def setup_method(self):
        clear_log_context()

    def teardown_method(self):
        clear_log_context()

    def test_defaults_are_empty(self):
        assert get_log_context() == {
            "cycle_id": "",
            "stage": "",
            "worker_id": "",
            "event_id": "",
            "instance_id": "",
        }

    def test_none_keeps_current_value(self):
        set_log_context(stage="sync-worker", worker_id="sync-worker-1")
        set_log_context(event_id="evt-1")

        ctx = get_log_context()
        assert ctx["stage"] == "sync-worker"
        assert ctx["worker_id"] == "sync-worker-1"
        assert ctx["event_id"] == "evt-1"

    def test_instance_id_is_stringified(self):
        set_log_context(instance_id=3)
        assert get_log_context()["instance_id"] == "3"

    def test_clear(self):
        set_log_context(stage="lifecycle-scheduler", cycle_id="c-1")
        clear_log_context()
        assert set(get_log_context().values()) == {""}
