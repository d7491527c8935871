"""Unit tests for dotted-path id extraction.

Tests cover:
- Scalar paths, nested mappings and fan-out across lists
- Deduplication across documents
- Malformed documents are skipped without raising
- Non-string leaves are ignored
"""

import pytest

from dataset_runner.lib.extract import extract_ids, resolve_path


class TestResolvePath:
    """Tests for walking a path through one document."""

    def test_scalar_field(self):
        assert resolve_path({"id": "a"}, "id") == "a"

    def test_nested_mapping(self):
        assert resolve_path({"customer": {"id": "c1"}}, "customer.id") == "c1"

    def test_missing_field_returns_none(self):
        assert resolve_path({"customer": {}}, "customer.id") is None

    def test_null_field_returns_none(self):
        assert resolve_path({"customer": None}, "customer.id") is None

    def test_list_fans_out(self):
        doc = {"variants": {"edges": [{"node": {"id": "v1"}}, {"node": {"id": "v2"}}]}}
        assert resolve_path(doc, "variants.edges.node.id") == ["v1", "v2"]

    def test_fan_out_skips_elements_missing_the_field(self):
        doc = {"lines": [{"sku": "A"}, {"qty": 1}, None, {"sku": "B"}]}
        assert resolve_path(doc, "lines.sku") == ["A", "B"]

    def test_scalar_in_the_middle_of_path(self):
        assert resolve_path({"id": "a"}, "id.value") is None


class TestExtractIds:
    """Tests for extract_ids across documents."""

    def test_empty_input_returns_empty_set(self):
        assert extract_ids([], "id") == set()

    def test_none_input_returns_empty_set(self):
        assert extract_ids(None, "id") == set()

    def test_scalar_path_one_id_per_document(self):
        docs = [{"id": "a"}, {"id": "b"}, {"id": "c"}]
        assert extract_ids(docs, "id") == {"a", "b", "c"}

    def test_duplicates_collapse(self):
        docs = [
            {"variants": [{"id": "v1"}, {"id": "v2"}]},
            {"variants": [{"id": "v2"}, {"id": "v3"}]},
        ]
        result = extract_ids(docs, "variants.id")
        assert result == {"v1", "v2", "v3"}
        assert len(result) <= 4

    def test_edges_path(self):
        docs = [
            {"id": "p1", "variants": {"edges": [{"node": {"id": "v1"}}, {"node": {"id": "v2"}}]}},
            {"id": "p2", "variants": {"edges": []}},
        ]
        assert extract_ids(docs, "variants.edges.node.id") == {"v1", "v2"}

    def test_non_string_leaves_ignored(self):
        docs = [{"id": 1}, {"id": None}, {"id": "x"}, {"id": {"nested": "y"}}, {"id": True}]
        assert extract_ids(docs, "id") == {"x"}

    def test_array_of_strings_at_leaf(self):
        docs = [{"tags": ["a", "b", 3]}, {"tags": ["b", "c"]}]
        assert extract_ids(docs, "tags") == {"a", "b", "c"}

    @pytest.mark.parametrize(
        "bad_doc",
        [None, 42, "text", [], {"variants": "oops"}, {"variants": [1, 2]}, {"other": 1}],
    )
    def test_malformed_documents_are_skipped(self, bad_doc):
        """A bad document never aborts extraction for the others."""
        docs = [{"variants": [{"id": "v1"}]}, bad_doc, {"variants": [{"id": "v2"}]}]
        assert extract_ids(docs, "variants.id") == {"v1", "v2"}

    def test_document_that_raises_is_isolated(self):
        """Documents whose traversal raises are logged and skipped."""

        class Exploding(dict):
            def get(self, *args, **kwargs):
                raise RuntimeError("boom")

        docs = [{"id": "a"}, Exploding(id="b"), {"id": "c"}]
        assert extract_ids(docs, "id") == {"a", "c"}

    def test_generator_input(self):
        docs = ({"id": str(i)} for i in range(3))
        assert extract_ids(docs, "id") == {"0", "1", "2"}
