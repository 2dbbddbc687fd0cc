from typing import Optional


class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input or authorization issues."""


class NotFound(Exception):
    """Requested resource was not found."""


class AuthExpired(Exception):
    """Platform rejected the credential used for a call."""


class ReauthRequired(Exception):
    """Credential could not be refreshed; the user must reconnect the platform."""

    def __init__(self, owner_id: str, platform: str, message: str = "") -> None:
        super().__init__(message or f"Re-authentication required for {owner_id} on {platform}")
        self.owner_id = owner_id
        self.platform = platform


class AICapabilityFailure(Exception):
    """Reasoning service kept returning malformed or empty results."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[str] = None) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class NoCandidateTracks(Exception):
    """Aggregated candidate pool ended up empty."""

    def __init__(self, queries_run: int = 0, queries_failed: int = 0) -> None:
        super().__init__(
            f"No candidate tracks found ({queries_run} queries run, {queries_failed} failed)"
        )
        self.queries_run = queries_run
        self.queries_failed = queries_failed


class PartialApplyFailure(Exception):
    """Some add/remove calls failed while applying a diff to the live playlist."""

    def __init__(self, added: int, removed: int, failed_adds: int, failed_removes: int,
                 invalid: int = 0) -> None:
        super().__init__(
            f"Diff partially applied: added={added} removed={removed} "
            f"failed_adds={failed_adds} failed_removes={failed_removes} invalid={invalid}"
        )
        self.added = added
        self.removed = removed
        self.failed_adds = failed_adds
        self.failed_removes = failed_removes
        self.invalid = invalid


class InvalidTrackReference(Exception):
    """Track reference is malformed for its platform."""

    def __init__(self, reference: str, platform: str) -> None:
        super().__init__(f"Invalid {platform} track reference: {reference!r}")
        self.reference = reference
        self.platform = platform


class RefreshTimeout(Exception):
    """Refresh exceeded its overall time budget."""

    def __init__(self, stage: str, added: int = 0, removed: int = 0) -> None:
        super().__init__(f"Refresh timed out during {stage} (added={added}, removed={removed})")
        self.stage = stage
        self.added = added
        self.removed = removed


class PlaylistNotFound(NotFound):
    """No committed playlist with the given id."""


class DraftNotFound(NotFound):
    """No draft with the given id."""


class EmptyDraft(Exception):
    """Draft cannot be committed without tracks."""
