from unittest.mock import Mock

import pytest

from mixwell.application.reasoning import (
    FixedReasoning,
    MalformedResponse,
    ReasoningGateway,
    parse_query_plan,
    parse_selection,
    strip_code_fences,
)
from mixwell.domain.entities import PromptContext
from mixwell.domain.errors import AICapabilityFailure, TemporaryFailure
from mixwell.tests.fakes import make_track


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


class TestParseQueryPlan:
    """Tests for query plan validation."""

    def test_accepts_wrapped_and_bare_lists(self):
        assert parse_query_plan('{"searchQueries": ["a", "b"]}') == ["a", "b"]
        assert parse_query_plan(["a", "b"]) == ["a", "b"]
        assert parse_query_plan({"queries": ["a"]}) == ["a"]

    def test_cleans_and_dedupes(self):
        raw = {"searchQueries": ["  britney   spears ", "Britney Spears", "", 42, "nsync"]}
        assert parse_query_plan(raw) == ["britney spears", "nsync"]

    def test_fenced_json(self):
        assert parse_query_plan('```json\n{"searchQueries": ["x"]}\n```') == ["x"]

    @pytest.mark.parametrize("raw", [
        "",
        "not json",
        '{"other": []}',
        '{"searchQueries": "a string"}',
        '{"searchQueries": ["", "   "]}',
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedResponse):
            parse_query_plan(raw)


class TestParseSelection:
    """Tests for curated index validation."""

    def test_valid_selection(self):
        assert parse_selection('{"selectedIndices": [2, 0, 1]}', pool_size=3, max_count=5) == [2, 0, 1]

    def test_duplicates_dropped_and_truncated(self):
        assert parse_selection([1, 1, 0, 2], pool_size=3, max_count=2) == [1, 0]

    def test_numeric_strings_accepted(self):
        assert parse_selection({"indices": ["0", " 2 "]}, pool_size=3, max_count=5) == [0, 2]

    @pytest.mark.parametrize("raw", [
        [3],
        [-1],
        [True],
        ["one"],
        [],
        {"selectedIndices": None},
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedResponse):
            parse_selection(raw, pool_size=3, max_count=5)


class TestReasoningGateway:
    """Tests for retrying the reasoning capability."""

    def setup_method(self):
        self.context = PromptContext(prompt="Early 2000's pop music", track_count=2)
        self.pool = [make_track("Toxic", "Britney Spears"), make_track("Bye Bye Bye", "NSYNC")]
        self.sleeps = []

    def test_plan_queries_retries_malformed_response(self):
        capability = Mock()
        capability.plan_queries.side_effect = ["garbage", '{"searchQueries": ["britney"]}']
        gateway = ReasoningGateway(capability, attempts=3, backoff_s=1.0, sleep=self.sleeps.append)

        assert gateway.plan_queries(self.context) == ["britney"]
        assert capability.plan_queries.call_count == 2
        assert self.sleeps == [1.0]

    def test_curate_retries_transient_failures(self):
        capability = Mock()
        capability.curate.side_effect = [TemporaryFailure("timeout"), {"selectedIndices": [1]}]
        gateway = ReasoningGateway(capability, sleep=self.sleeps.append)

        assert gateway.curate(self.pool, self.context) == [1]

    def test_exhausted_attempts_raise_capability_failure(self):
        capability = Mock()
        capability.curate.return_value = {"selectedIndices": [7]}
        gateway = ReasoningGateway(capability, attempts=3, backoff_s=0.5, sleep=self.sleeps.append)

        with pytest.raises(AICapabilityFailure) as exc_info:
            gateway.curate(self.pool, self.context)

        assert exc_info.value.operation == "curate"
        assert exc_info.value.attempts == 3
        assert "outside pool" in exc_info.value.last_error
        assert self.sleeps == [0.5, 1.0]

    def test_selection_truncated_to_track_count(self):
        gateway = ReasoningGateway(FixedReasoning(["q"], indices=[1, 0, 1]), sleep=self.sleeps.append)
        context = PromptContext(prompt="p", track_count=1)
        assert gateway.curate(self.pool, context) == [1]


def test_fixed_reasoning_defaults_to_leading_indices():
    reasoning = FixedReasoning(["a", "b"])
    context = PromptContext(prompt="p", track_count=5)
    pool = [make_track(f"Song {i}", "Artist") for i in range(3)]

    assert reasoning.plan_queries(context) == {"searchQueries": ["a", "b"]}
    assert reasoning.curate(pool, context) == {"selectedIndices": [0, 1, 2]}
    assert reasoning.plan_calls == [context]
    assert reasoning.curate_calls == [context]
