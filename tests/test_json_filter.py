"""Tests for JSON path filtering of HTTP bodies."""

import json

import pytest

from source_sync.json_filter import apply_json_filter, extract

BODY = json.dumps(
    {
        "data": {
            "items": [{"name": "first"}, {"name": "second"}],
            "count": 2,
            "active": True,
            "missing": None,
        },
        "matrix": [[1, 2], [3, 4]],
        "label": "plain",
    }
)


class TestApplyJsonFilter:
    def test_nested_property(self):
        assert apply_json_filter(BODY, "data.items[1].name") == "second"

    def test_index_out_of_bounds(self):
        result = apply_json_filter(BODY, "data.items[5].name")
        assert result == "Path 'data.items[5].name' is invalid (index 5 out of bounds)"

    def test_empty_path_returns_full_object(self):
        assert json.loads(apply_json_filter(BODY, "")) == json.loads(BODY)

    def test_root_prefix_is_ignored(self):
        assert apply_json_filter(BODY, "root.label") == "plain"
        assert json.loads(apply_json_filter(BODY, "root")) == json.loads(BODY)

    def test_missing_property(self):
        result = apply_json_filter(BODY, "data.nothing")
        assert result == "Path 'data.nothing' not found (property 'nothing' is missing)"

    def test_indexing_a_non_array(self):
        result = apply_json_filter(BODY, "data.count[0]")
        assert result == "Path 'data.count[0]' is invalid ('count' is not an array)"

    def test_multiple_indices(self):
        assert apply_json_filter(BODY, "matrix[1][0]") == "3"

    def test_objects_are_pretty_printed(self):
        assert apply_json_filter(BODY, "data.items[0]") == json.dumps(
            {"name": "first"}, indent=2
        )

    @pytest.mark.parametrize(
        "path,expected",
        [("data.count", "2"), ("data.active", "true"), ("data.missing", "null")],
    )
    def test_scalars_render_as_json(self, path, expected):
        assert apply_json_filter(BODY, path) == expected

    def test_non_json_body_unchanged(self):
        assert apply_json_filter("<html>hi</html>", "data.items") == "<html>hi</html>"

    def test_top_level_array(self):
        assert apply_json_filter('[{"id": 9}]', "[0].id") == "9"


class TestExtract:
    def test_success_flag(self):
        ok, value = extract({"a": [1, 2]}, "a[1]")
        assert ok is True
        assert value == 2

    def test_failure_flag(self):
        ok, message = extract({"a": []}, "a[0]")
        assert ok is False
        assert "out of bounds" in message

    def test_unparsable_path(self):
        ok, message = extract({"a": 1}, "a[x]")
        assert ok is False
        assert "invalid" in message
