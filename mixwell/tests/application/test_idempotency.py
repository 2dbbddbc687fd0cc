from concurrent.futures import Future
from unittest.mock import Mock

from mixwell.application.idempotency import (
    ManualRefreshCommand,
    ManualRefreshDispatcher,
    calculate_command_key,
)
from mixwell.domain.entities import Trigger, UpdateMode


class PendingExecutor:
    """Holds submitted work without running it."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.submitted.append((fn, args, future))
        return future


def test_command_json_round_trip():
    command = ManualRefreshCommand("pl-1", song_count=20, mode=UpdateMode.REPLACE, idempotency_key="abc")
    assert ManualRefreshCommand.from_json(command.to_json()) == command


class TestCalculateCommandKey:
    """Tests for duplicate detection keys."""

    def test_explicit_key_is_used(self):
        assert calculate_command_key(ManualRefreshCommand("pl-1", idempotency_key="abc")) == "pl-1:abc"

    def test_same_parameters_same_key(self):
        a = ManualRefreshCommand("pl-1", song_count=20)
        b = ManualRefreshCommand("pl-1", song_count=20)
        assert calculate_command_key(a) == calculate_command_key(b)

    def test_different_parameters_different_key(self):
        a = ManualRefreshCommand("pl-1", song_count=20)
        b = ManualRefreshCommand("pl-1", song_count=25)
        c = ManualRefreshCommand("pl-1", song_count=20, mode=UpdateMode.REPLACE)
        assert len({calculate_command_key(x) for x in (a, b, c)}) == 3


class TestManualRefreshDispatcher:
    """Tests for collapsing duplicate manual refreshes."""

    def setup_method(self):
        self.now = 1000.0
        self.orchestrator = Mock()
        self.executor = PendingExecutor()
        self.dispatcher = ManualRefreshDispatcher(self.orchestrator, self.executor, ttl_s=60,
                                                  clock=lambda: self.now)

    def test_submits_manual_refresh(self):
        future, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", song_count=10))

        assert not duplicate
        fn, args, _ = self.executor.submitted[0]
        assert fn == self.orchestrator.refresh
        assert args == ("pl-1", Trigger.MANUAL, 10, None, None)
        assert self.dispatcher.pending() == 1

    def test_duplicate_returns_same_future(self):
        first, _ = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        second, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))

        assert duplicate
        assert second is first
        assert len(self.executor.submitted) == 1

    def test_different_key_is_dispatched(self):
        self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k1"))
        _, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k2"))
        assert not duplicate
        assert len(self.executor.submitted) == 2

    def test_finished_submission_expires_after_ttl(self):
        first, _ = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        first.set_result("done")

        self.now += 30
        _, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        assert duplicate

        self.now += 60
        _, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        assert not duplicate

    def test_running_submission_never_expires(self):
        self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        self.now += 3600
        _, duplicate = self.dispatcher.submit(ManualRefreshCommand("pl-1", idempotency_key="k"))
        assert duplicate

    def test_identical_request_without_key_runs_again_after_finishing(self):
        command = ManualRefreshCommand("pl-1", song_count=10)
        first, _ = self.dispatcher.submit(command)
        _, duplicate = self.dispatcher.submit(command)
        assert duplicate

        first.set_result("done")
        second, duplicate = self.dispatcher.submit(command)

        assert not duplicate
        assert second is not first
        assert len(self.executor.submitted) == 2
