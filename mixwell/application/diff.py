import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from mixwell.application.identity import dedupe_by_key, identity_keys
from mixwell.application.locks import Deadline
from mixwell.application.retry import call_with_retry
from mixwell.domain.entities import CandidateTrack, PlatformAccount, PlatformKind, UpdateMode
from mixwell.domain.errors import NotFound, PartialApplyFailure, PermanentFailure, RateLimited, TemporaryFailure
from mixwell.domain.ports import PlatformAdapter
from mixwell.domain.track_refs import is_valid_ref


logger = logging.getLogger(__name__)


@dataclass
class PlaylistDiff:
    to_add: List[CandidateTrack] = field(default_factory=list)
    to_remove: List[CandidateTrack] = field(default_factory=list)


@dataclass
class ApplyReport:
    """What actually happened on the platform."""

    added: int = 0
    removed: int = 0
    failed_adds: int = 0
    failed_removes: int = 0
    invalid: int = 0
    timed_out: bool = False
    added_keys: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return bool(self.failed_adds or self.failed_removes)

    @property
    def aborted(self) -> bool:
        return self.error is not None

    def count(self, action: str, done: int = 0, failed: int = 0) -> None:
        if action == "add":
            self.added += done
            self.failed_adds += failed
        else:
            self.removed += done
            self.failed_removes += failed


def partial_failure(report: ApplyReport) -> PartialApplyFailure:
    return PartialApplyFailure(
        added=report.added,
        removed=report.removed,
        failed_adds=report.failed_adds,
        failed_removes=report.failed_removes,
        invalid=report.invalid,
    )


def compute_diff(mode: UpdateMode, live: Sequence[CandidateTrack], selected: Sequence[CandidateTrack]) -> PlaylistDiff:
    """Append adds only what is not already live; replace removes everything live and adds the selection."""
    selected = dedupe_by_key(selected)
    if mode == UpdateMode.REPLACE:
        return PlaylistDiff(to_add=list(selected), to_remove=list(live))

    live_keys = set()
    for track in live:
        live_keys.update(identity_keys(track))
    to_add = [t for t in selected if not any(k in live_keys for k in identity_keys(t))]
    return PlaylistDiff(to_add=to_add)


class BatchApplier:
    """Applies a diff in platform-sized batches with retry logic.

    Malformed track references are filtered out before any platform call and
    counted as invalid. A batch that still fails after retries is counted as
    failed and the rest of the diff continues; any other error stops it.
    """

    def __init__(self,
                 adapters: Dict[PlatformKind, PlatformAdapter],
                 batch_size: int = 100,
                 max_retries: int = 3,
                 sleep: Callable[[float], None] = time.sleep):
        self.adapters = adapters
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.sleep = sleep

    def split_into_batches(self, items: List[CandidateTrack]) -> List[List[CandidateTrack]]:
        return [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]

    def _valid(self, platform: PlatformKind, tracks: Sequence[CandidateTrack], report: ApplyReport) -> List[CandidateTrack]:
        valid = []
        for track in tracks:
            if is_valid_ref(platform, track.uri):
                valid.append(track)
            else:
                report.invalid += 1
                logger.warning(f"Skipping invalid track reference {track.uri!r} ({track.name})")
        return valid

    def _run_batches(self,
                     action: str,
                     tracks: List[CandidateTrack],
                     call: Callable[[List[str]], None],
                     report: ApplyReport,
                     deadline: Optional[Deadline]) -> bool:
        """Run ``call`` per batch. Returns False when the apply must stop."""
        batches = self.split_into_batches(tracks)
        for batch_index, batch in enumerate(batches):
            if deadline is not None and deadline.expired():
                report.timed_out = True
                return False
            refs = [t.uri for t in batch]
            try:
                call_with_retry(
                    lambda: call(refs),
                    label=f"{action} batch {batch_index}",
                    max_retries=self.max_retries,
                    sleep=self.sleep,
                    deadline=deadline,
                )
            except (RateLimited, TemporaryFailure, PermanentFailure, NotFound) as e:
                report.count(action, failed=len(batch))
                logger.error(f"{action.capitalize()} batch {batch_index} failed: {e}")
                continue
            except Exception as e:
                # Anything else (expired authorization, adapter bug) ends the apply.
                report.count(action, failed=sum(len(b) for b in batches[batch_index:]))
                report.error = e
                logger.error(f"{action.capitalize()} batch {batch_index} aborted the apply: {e}", exc_info=True)
                return False
            report.count(action, done=len(batch))
            if action == "add":
                report.added_keys.extend(t.canonical_key for t in batch)
        return True

    def apply(self,
              account: PlatformAccount,
              playlist_id: str,
              diff: PlaylistDiff,
              deadline: Optional[Deadline] = None) -> ApplyReport:
        """Remove then add.

        Stops early (``timed_out``) when the deadline passes between batches,
        and (``error``) on a failure that is not a platform outcome; tracks
        not attempted after such a failure are counted as failed.
        """
        adapter = self.adapters[account.kind]
        report = ApplyReport()

        removals = self._valid(account.kind, diff.to_remove, report)
        additions = self._valid(account.kind, diff.to_add, report)

        finished = self._run_batches(
            "remove", removals,
            lambda refs: adapter.remove_tracks(account, playlist_id, refs),
            report, deadline,
        )
        if not finished:
            if report.error is not None:
                report.failed_adds += len(additions)
            return report

        finished = self._run_batches(
            "add", additions,
            lambda refs: adapter.add_tracks(account, playlist_id, refs),
            report, deadline,
        )
        if not finished:
            return report

        logger.info(f"Applied diff to {playlist_id}: added={report.added} removed={report.removed} "
                    f"failed_adds={report.failed_adds} failed_removes={report.failed_removes} "
                    f"invalid={report.invalid}")
        return report
