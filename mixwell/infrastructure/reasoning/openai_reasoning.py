import logging
from typing import Any, Optional, Sequence

import openai
from openai import OpenAI

from mixwell.domain.entities import CandidateTrack, PromptContext
from mixwell.domain.errors import PermanentFailure, RateLimited, TemporaryFailure

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = (
    "You are a music curator. Turn the listener's request into Spotify/Apple Music "
    "catalog search queries. Mix artist names, song titles, genres and eras. "
    'Respond with JSON: {"searchQueries": ["...", ...]}.'
)

CURATE_SYSTEM_PROMPT = (
    "You are a music curator. From the numbered candidate tracks pick the ones that "
    "best fit the listener's request, in playlist order. Use only numbers from the list. "
    'Respond with JSON: {"selectedIndices": [0, 3, ...]}.'
)


def _query_count(track_count: int) -> int:
    return max(10, min(25, track_count // 2))


def build_plan_message(context: PromptContext) -> str:
    lines = [f"Request: {context.prompt}", f"Number of songs wanted: {context.track_count}"]
    lines.append(f"Write {_query_count(context.track_count)} different search queries.")
    if context.refinements:
        lines.append("Refinements from the listener:")
        lines.extend(f"- {r}" for r in context.refinements)
    if context.reference_tracks:
        lines.append("The playlist already contains, keep new picks similar to: "
                     + "; ".join(context.reference_tracks))
    if not context.allow_explicit:
        lines.append("Avoid explicit content.")
    if context.new_artists_only:
        lines.append("Only suggest artists the listener is unlikely to know; avoid the biggest names.")
    return "\n".join(lines)


def build_curate_message(pool: Sequence[CandidateTrack], context: PromptContext) -> str:
    lines = [build_plan_message(context), "", f"Pick up to {context.track_count} tracks.", "Candidates:"]
    liked = context.liked_keys
    disliked = context.disliked_keys
    for index, track in enumerate(pool):
        marker = ""
        if track.canonical_key in liked:
            marker = " [liked before]"
        elif track.canonical_key in disliked:
            marker = " [disliked before]"
        lines.append(f"{index}. {track.name} by {track.artist}{marker}")
    return "\n".join(lines)


class OpenAIReasoning:
    """ReasoningCapability backed by an OpenAI chat model in JSON mode.

    Returns the raw message text; validation and retries happen in
    ReasoningGateway. Transport errors are mapped to domain errors.
    """

    def __init__(self,
                 api_key: str,
                 model: str = "gpt-4o-mini",
                 temperature: float = 0.7,
                 timeout: float = 60.0,
                 client: Optional[Any] = None):
        self.model = model
        self.temperature = temperature
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def _complete(self, system_prompt: str, user_message: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
            )
        except openai.RateLimitError as e:
            raise RateLimited(retry_after_ms=1000, message=str(e)) from e
        except (openai.APIConnectionError, openai.APITimeoutError, openai.InternalServerError) as e:
            raise TemporaryFailure(f"OpenAI request failed: {e}") from e
        except openai.AuthenticationError as e:
            raise PermanentFailure(f"OpenAI rejected the API key: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TemporaryFailure(f"OpenAI request failed ({e.status_code}): {e}") from e
            raise PermanentFailure(f"OpenAI rejected the request ({e.status_code}): {e}") from e

        choices = response.choices or []
        content = choices[0].message.content if choices else None
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(f"OpenAI usage: prompt={usage.prompt_tokens} completion={usage.completion_tokens}")
        return content or ""

    def plan_queries(self, context: PromptContext) -> Any:
        return self._complete(PLAN_SYSTEM_PROMPT, build_plan_message(context))

    def curate(self, pool: Sequence[CandidateTrack], context: PromptContext) -> Any:
        return self._complete(CURATE_SYSTEM_PROMPT, build_curate_message(pool, context))
