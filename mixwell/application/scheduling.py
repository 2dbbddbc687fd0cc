import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from mixwell.crosscutting.logging import CorrelationContext, log_error, log_sweep_complete
from mixwell.domain.entities import AutoUpdateConfig, Frequency, PlaylistSpec, RefreshOutcome, Trigger
from mixwell.domain.errors import PlaylistNotFound


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def compute_next_run(config: AutoUpdateConfig, after: datetime) -> Optional[datetime]:
    """Next run time in UTC for an auto-update config, strictly after ``after``.

    The time of day is interpreted in the playlist's IANA zone:
    daily is the next occurrence of the time of day, weekly is seven days
    from the local date of ``after``, monthly is the first day of the next
    calendar month.
    """
    if config.frequency == Frequency.NONE:
        return None
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    zone = ZoneInfo(config.timezone)
    local_after = after.astimezone(zone)
    today = local_after.date()

    if config.frequency == Frequency.DAILY:
        candidate = datetime.combine(today, config.time_of_day, tzinfo=zone)
        if candidate <= local_after:
            candidate = datetime.combine(today + timedelta(days=1), config.time_of_day, tzinfo=zone)
    elif config.frequency == Frequency.WEEKLY:
        candidate = datetime.combine(today + timedelta(days=7), config.time_of_day, tzinfo=zone)
    elif config.frequency == Frequency.MONTHLY:
        candidate = datetime.combine(_first_of_next_month(today), config.time_of_day, tzinfo=zone)
    else:
        raise ValueError(f"Unsupported frequency: {config.frequency}")

    return candidate.astimezone(timezone.utc)


@dataclass
class SweepReport:
    due: int = 0
    dispatched: List[str] = field(default_factory=list)
    skipped_cooldown: List[str] = field(default_factory=list)
    futures: Dict[str, Future] = field(default_factory=dict)


class AutoUpdateScheduler:
    """Periodically dispatches refreshes for playlists whose ``nextRunAt`` has passed.

    ``nextRunAt`` is advanced and saved before the refresh is dispatched, so a
    playlist is never evaluated twice in the same window whatever the refresh
    outcome. Playlists refreshed by hand within the cooldown window are
    skipped, and still advanced.
    """

    def __init__(self,
                 playlists,
                 orchestrator,
                 executor: Executor,
                 cooldown: timedelta = timedelta(hours=24),
                 interval_s: float = 60,
                 clock: Callable[[], datetime] = _utcnow):
        self.playlists = playlists
        self.orchestrator = orchestrator
        self.executor = executor
        self.cooldown = cooldown
        self.interval_s = interval_s
        self.clock = clock
        self._sweep_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Evaluate every playlist once and dispatch the due ones."""
        now = now or self.clock()
        report = SweepReport()

        with self._sweep_lock, CorrelationContext(trigger=Trigger.AUTO.value, stage='sweep'):
            for spec in self.playlists.list():
                if spec.auto_update.frequency == Frequency.NONE:
                    continue

                next_run = spec.timestamps.next_run_at
                if next_run is None:
                    self._advance(spec.id, now)
                    continue
                if next_run > now:
                    continue

                report.due += 1
                self._advance(spec.id, now)

                if self._in_cooldown(spec, now):
                    logger.info(f"Skipping auto refresh of {spec.id}: manual refresh at "
                                f"{spec.timestamps.last_manual_refresh_at.isoformat()} is within cooldown")
                    report.skipped_cooldown.append(spec.id)
                    continue

                report.futures[spec.id] = self.executor.submit(self._run, spec.id)
                report.dispatched.append(spec.id)

            log_sweep_complete(logger, report.due, len(report.dispatched), len(report.skipped_cooldown))

        return report

    def _in_cooldown(self, spec: PlaylistSpec, now: datetime) -> bool:
        last_manual = spec.timestamps.last_manual_refresh_at
        return last_manual is not None and now - last_manual < self.cooldown

    def _advance(self, playlist_id: str, now: datetime) -> None:
        def mutate(spec: PlaylistSpec) -> PlaylistSpec:
            if spec.auto_update.frequency == Frequency.NONE:
                return spec
            previous = spec.timestamps.next_run_at
            after = max(now, previous) if previous is not None else now
            return spec.with_timestamps(next_run_at=compute_next_run(spec.auto_update, after))

        try:
            spec = self.playlists.update(playlist_id, mutate)
            logger.debug(f"Next auto refresh of {playlist_id} at {spec.timestamps.next_run_at}")
        except PlaylistNotFound:
            logger.info(f"Playlist {playlist_id} was deleted during sweep")

    def _run(self, playlist_id: str) -> Optional[RefreshOutcome]:
        try:
            return self.orchestrator.refresh(playlist_id, trigger=Trigger.AUTO)
        except Exception as e:
            log_error(logger, f"Auto refresh of {playlist_id} failed", e, playlist_id=playlist_id)
            return None

    def start(self) -> None:
        """Run sweeps on a background thread every ``interval_s`` seconds."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='mixwell-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (interval {self.interval_s}s)")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                log_error(logger, "Scheduler sweep failed", e)
            self._stop.wait(self.interval_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
