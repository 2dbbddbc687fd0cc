import json
import logging
import re
import time
from typing import Any, Callable, List, Optional, Sequence

from mixwell.domain.entities import CandidateTrack, PromptContext
from mixwell.domain.errors import AICapabilityFailure, RateLimited, TemporaryFailure
from mixwell.domain.ports import ReasoningCapability


logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_QUERY_KEYS = ("searchQueries", "queries")
_INDEX_KEYS = ("selectedIndices", "indices", "selected")


class MalformedResponse(ValueError):
    """Reasoning response did not match the expected schema."""


def strip_code_fences(text: str) -> str:
    match = _FENCE_PATTERN.match(text or "")
    return match.group(1).strip() if match else (text or "").strip()


def _decode(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        text = strip_code_fences(raw)
        if not text:
            raise MalformedResponse("empty response")
        try:
            return json.loads(text)
        except ValueError as e:
            raise MalformedResponse(f"response is not valid JSON: {e}")
    return raw


def _unwrap(data: Any, keys: Sequence[str]) -> Any:
    if isinstance(data, dict):
        for key in keys:
            if key in data:
                return data[key]
        raise MalformedResponse(f"response has none of the keys {list(keys)}")
    return data


def parse_query_plan(raw: Any) -> List[str]:
    """Ordered, de-duplicated, non-empty search queries from a raw response."""
    data = _unwrap(_decode(raw), _QUERY_KEYS)
    if not isinstance(data, list):
        raise MalformedResponse("query plan is not a list")

    queries: List[str] = []
    seen = set()
    for item in data:
        if not isinstance(item, str):
            continue
        query = " ".join(item.split())
        if not query or query.lower() in seen:
            continue
        seen.add(query.lower())
        queries.append(query)

    if not queries:
        raise MalformedResponse("query plan is empty")
    return queries


def parse_selection(raw: Any, pool_size: int, max_count: int) -> List[int]:
    """Selected pool indices from a raw response.

    Indices outside the pool make the whole response malformed. Repeats are
    dropped and the selection is truncated to ``max_count``.
    """
    data = _unwrap(_decode(raw), _INDEX_KEYS)
    if not isinstance(data, list):
        raise MalformedResponse("selection is not a list")

    indices: List[int] = []
    seen = set()
    for item in data:
        if isinstance(item, bool):
            raise MalformedResponse(f"invalid index {item!r}")
        if isinstance(item, str) and item.strip().isdigit():
            item = int(item.strip())
        if not isinstance(item, int):
            raise MalformedResponse(f"invalid index {item!r}")
        if item < 0 or item >= pool_size:
            raise MalformedResponse(f"index {item} outside pool of {pool_size}")
        if item in seen:
            continue
        seen.add(item)
        indices.append(item)

    if not indices:
        raise MalformedResponse("selection is empty")
    return indices[:max_count]


class ReasoningGateway:
    """Validating boundary in front of the external reasoning capability.

    Malformed or empty responses, and transient transport failures, are
    retried with exponential backoff. After ``attempts`` tries the caller gets
    AICapabilityFailure.
    """

    def __init__(self,
                 capability: ReasoningCapability,
                 attempts: int = 3,
                 backoff_s: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.capability = capability
        self.attempts = max(1, attempts)
        self.backoff_s = backoff_s
        self.sleep = sleep

    def plan_queries(self, context: PromptContext) -> List[str]:
        return self._with_retries(
            "planQueries",
            lambda: self.capability.plan_queries(context),
            parse_query_plan,
        )

    def curate(self, pool: Sequence[CandidateTrack], context: PromptContext) -> List[int]:
        """Indices into ``pool``, at most ``context.track_count`` of them."""
        return self._with_retries(
            "curate",
            lambda: self.capability.curate(pool, context),
            lambda raw: parse_selection(raw, len(pool), context.track_count),
        )

    def _with_retries(self, operation: str, call: Callable[[], Any], parse: Callable[[Any], Any]) -> Any:
        last_error: Optional[str] = None
        for attempt in range(1, self.attempts + 1):
            try:
                return parse(call())
            except MalformedResponse as e:
                last_error = str(e)
                logger.warning(f"{operation} returned a malformed response (attempt {attempt}): {e}")
            except (TemporaryFailure, RateLimited) as e:
                last_error = str(e)
                logger.warning(f"{operation} failed (attempt {attempt}): {e}")

            if attempt < self.attempts:
                self.sleep(self.backoff_s * 2 ** (attempt - 1))

        raise AICapabilityFailure(operation, self.attempts, last_error)


class FixedReasoning:
    """Deterministic capability: a fixed query list in, a fixed index set out.

    With no ``indices`` the first ``track_count`` pool positions are selected.
    Every call is recorded so tests can assert on the contexts received.
    """

    def __init__(self, queries: Sequence[str], indices: Optional[Sequence[int]] = None):
        self.queries = list(queries)
        self.indices = None if indices is None else list(indices)
        self.plan_calls: List[PromptContext] = []
        self.curate_calls: List[PromptContext] = []

    def plan_queries(self, context: PromptContext) -> Any:
        self.plan_calls.append(context)
        return {"searchQueries": list(self.queries)}

    def curate(self, pool: Sequence[CandidateTrack], context: PromptContext) -> Any:
        self.curate_calls.append(context)
        if self.indices is not None:
            return {"selectedIndices": list(self.indices)}
        return {"selectedIndices": list(range(min(len(pool), context.track_count)))}
