"""
Unit tests for log event enrichment.
"""

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.logging import (
    add_correlation_context,
    add_worker_context,
    clear_context,
    refresh_action_context,
    refresh_action_var,
    set_cache_type,
    set_request_id,
)


class TestLogEnrichment:

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_logger_name_split_into_service_and_component(self):
        event = add_worker_context(None, "info", {"event": "x", "logger": "dashboard.refresh_scheduler"})

        assert event["service"] == "dashboard"
        assert event["component"] == "refresh_scheduler"

    def test_plain_logger_name_left_alone(self):
        event = add_worker_context(None, "info", {"event": "x", "logger": "uvicorn"})

        assert "component" not in event

    def test_cache_type_and_request_added(self):
        set_request_id("req-1")
        set_cache_type("dashboard")

        event = add_correlation_context(None, "info", {"event": "Cache lookup"})

        assert event["request_id"] == "req-1"
        assert event["cache_type"] == "dashboard"
        assert "action" not in event

    def test_refresh_action_scoped_to_block(self):
        with refresh_action_context("refresh_patch_project_mapping_view"):
            event = add_correlation_context(None, "info", {"event": "View refresh succeeded"})

        assert event["action"] == "refresh_patch_project_mapping_view"
        assert refresh_action_var.get() is None

    def test_explicit_fields_win(self):
        with refresh_action_context("outer"):
            event = add_correlation_context(None, "warning", {"event": "x", "action": "inner"})

        assert event["action"] == "inner"

    def test_clear_context(self):
        set_request_id("req-1")
        set_cache_type("projects")

        clear_context()

        assert add_correlation_context(None, "info", {"event": "x"}) == {"event": "x"}
