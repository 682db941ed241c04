"""Tests for step input mapping."""

import logging

from trustloop.workflows.mapping import get_nested_value, resolve_input_mapping

RESULTS = {
    "pick": {
        "status": "completed",
        "gate_response": {"action": "select", "selected_options": ["A", "C"]},
    },
    "research": {"status": "completed", "output": {"links": ["x", "y"], "meta": {"n": 2}}},
}


class TestGetNestedValue:
    def test_walks_mappings(self):
        assert get_nested_value(RESULTS, "research.output.meta.n") == 2

    def test_sequence_index(self):
        assert get_nested_value(RESULTS, "research.output.links.1") == "y"
        assert get_nested_value(RESULTS, "research.output.links.5") is None

    def test_missing_segment(self):
        assert get_nested_value(RESULTS, "research.output.nope.deeper") is None
        assert get_nested_value(RESULTS, "pick.status.length") is None


class TestResolveInputMapping:
    def test_gate_reference(self):
        resolved = resolve_input_mapping(
            {"titles": "step:pick:gate_response.selected_options"}, RESULTS
        )
        assert resolved == {"titles": ["A", "C"]}

    def test_literals_pass_through(self):
        mapping = {"tone": "formal", "limit": 3, "tags": ["a"], "flag": None}
        assert resolve_input_mapping(mapping, RESULTS) == mapping

    def test_missing_step_omitted(self, caplog):
        with caplog.at_level(logging.WARNING, logger="trustloop"):
            resolved = resolve_input_mapping({"x": "step:ghost:output"}, RESULTS)
        assert resolved == {}
        assert "ghost" in caplog.text

    def test_missing_path_is_none(self):
        resolved = resolve_input_mapping({"x": "step:research:output.missing"}, RESULTS)
        assert resolved == {"x": None}

    def test_malformed_reference_skipped(self):
        assert resolve_input_mapping({"x": "step:research"}, RESULTS) == {}

    def test_path_may_contain_colons(self):
        results = {"s": {"output": {"a:b": 1}}}
        assert resolve_input_mapping({"x": "step:s:output.a:b"}, results) == {"x": 1}

    def test_empty_results(self):
        assert resolve_input_mapping({"x": "step:a:output", "y": 1}, {}) == {"y": 1}
