import argparse
import json
import sys
import logging
import signal
import threading
import time
from typing import Callable, List, Optional

from mixwell.crosscutting.config import Settings
from mixwell.crosscutting.logging import setup_logging
from mixwell.domain.entities import PlatformAccount, PlatformKind, Trigger, UpdateMode
from mixwell.interfaces.runtime import Runtime


logger = logging.getLogger(__name__)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']


class CLI:
    """Command Line Interface for mixwell."""

    def __init__(self,
                 settings_factory: Callable[[], Settings] = Settings.from_env,
                 runtime_factory: Callable[[Settings], Runtime] = Runtime):
        """Initialize CLI.

        Args:
            settings_factory: Reads settings (tests pass a fixed Settings)
            runtime_factory: Builds the runtime from settings
        """
        self.settings_factory = settings_factory
        self.runtime_factory = runtime_factory
        self.parser = self._create_parser()
        self.runtime: Optional[Runtime] = None
        self._start_time = None
        self._stop = threading.Event()

    def _add_log_level(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--log-level',
            choices=LOG_LEVELS,
            default=None,
            help='Set logging level (default from MIXWELL_LOG_LEVEL or INFO)'
        )

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='mixwell',
            description='Generate and keep prompt-driven playlists up to date'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Serve command
        serve_parser = subparsers.add_parser('serve', help='Run the HTTP interface and the scheduler')
        serve_parser.add_argument('--host', default='localhost', help='Bind address (default: localhost)')
        serve_parser.add_argument('--port', type=int, default=3000, help='Port (default: 3000)')
        serve_parser.add_argument(
            '--no-scheduler',
            action='store_true',
            help='Do not run automatic playlist updates in this process'
        )
        self._add_log_level(serve_parser)

        # Scheduler command
        scheduler_parser = subparsers.add_parser('scheduler', help='Run automatic playlist updates until stopped')
        self._add_log_level(scheduler_parser)

        # Sweep command
        sweep_parser = subparsers.add_parser('sweep', help='Run one scheduler pass and wait for its refreshes')
        self._add_log_level(sweep_parser)

        # Refresh command
        refresh_parser = subparsers.add_parser('refresh', help='Refresh a committed playlist now')
        refresh_parser.add_argument('playlist_id', help='Playlist id')
        refresh_parser.add_argument('--songs', type=int, default=None, help='Number of songs to select')
        refresh_parser.add_argument(
            '--mode',
            choices=[m.value for m in UpdateMode],
            default=None,
            help="Update mode (default: the playlist's own)"
        )
        refresh_parser.add_argument(
            '--new-artists-only',
            action='store_true',
            default=None,
            help='Only pick artists the listener does not already know'
        )
        self._add_log_level(refresh_parser)

        # List committed playlists
        list_parser = subparsers.add_parser('list', help='List managed playlists')
        list_parser.add_argument('--owner', default=None, help='Only playlists of this owner')
        self._add_log_level(list_parser)

        # Library command
        library_parser = subparsers.add_parser('library', help="List playlists in a platform library")
        library_parser.add_argument(
            '--platform',
            choices=[k.value for k in PlatformKind],
            required=True,
            help='Platform'
        )
        library_parser.add_argument('--account', required=True, help='Connected platform account id')
        self._add_log_level(library_parser)

        # Config command
        config_parser = subparsers.add_parser('config', help='Show configuration summary')
        self._add_log_level(config_parser)

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._stop.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Clean up resources on exit."""
        if self.runtime is not None:
            self.runtime.shutdown(wait=True)
            self.runtime = None
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def _get_runtime(self, settings: Settings) -> Runtime:
        if self.runtime is None:
            self.runtime = self.runtime_factory(settings)
        return self.runtime

    def _serve(self, args: argparse.Namespace, settings: Settings) -> None:
        from mixwell.interfaces.http import HTTPServer

        runtime = self._get_runtime(settings)
        runtime.start(scheduler=not args.no_scheduler)
        HTTPServer(runtime, host=args.host, port=args.port).run()

    def _run_scheduler(self, args: argparse.Namespace, settings: Settings) -> None:
        runtime = self._get_runtime(settings)
        self._setup_signal_handlers()
        runtime.start(scheduler=True)
        logger.info("Scheduler running, press Ctrl+C to stop")
        while not self._stop.wait(1.0):
            pass

    def _sweep(self, args: argparse.Namespace, settings: Settings) -> None:
        runtime = self._get_runtime(settings)
        report = runtime.scheduler.sweep()

        print(f"Due: {report.due}, dispatched: {len(report.dispatched)}, "
              f"skipped (cooldown): {len(report.skipped_cooldown)}")
        for playlist_id, future in report.futures.items():
            outcome = future.result()
            if outcome is None:
                print(f"{playlist_id}: failed")
            else:
                print(f"{playlist_id}: {outcome.status.value} (+{outcome.added} -{outcome.removed})")

    def _refresh(self, args: argparse.Namespace, settings: Settings) -> None:
        runtime = self._get_runtime(settings)
        outcome = runtime.orchestrator.refresh(
            args.playlist_id,
            trigger=Trigger.MANUAL,
            song_count=args.songs,
            mode=UpdateMode(args.mode) if args.mode else None,
            new_artists_only=args.new_artists_only,
        )
        print(json.dumps(outcome.to_json(), indent=2))

    def _list_playlists(self, args: argparse.Namespace, settings: Settings) -> None:
        runtime = self._get_runtime(settings)
        specs = runtime.playlists.list(args.owner)

        print("Managed playlists:")
        print("-" * 50)
        for spec in specs:
            next_run = spec.timestamps.next_run_at.isoformat() if spec.timestamps.next_run_at else '-'
            print(f"{spec.id}: {spec.name} [{spec.account.kind.value}] "
                  f"(auto: {spec.auto_update.frequency.value}, next: {next_run})")

    def _library(self, args: argparse.Namespace, settings: Settings) -> None:
        runtime = self._get_runtime(settings)
        account = PlatformAccount(kind=PlatformKind(args.platform), external_account_id=args.account)
        playlists = runtime.adapters[account.kind].get_library_playlists(account)

        print(f"Playlists in {args.platform} library of {args.account}:")
        print("-" * 50)
        for playlist in playlists:
            editable = "[EDITABLE]" if playlist.can_edit else "[READ-ONLY]"
            print(f"{playlist.id}: {playlist.name} {editable} (tracks: {playlist.track_count})")

    def _show_config(self, args: argparse.Namespace, settings: Settings) -> None:
        print(json.dumps(settings.get_config_summary(), indent=2))

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                sys.exit(1)

            settings = self.settings_factory()
            setup_logging(args.log_level or settings.log_level, settings.log_file, settings.log_format)

            commands = {
                'serve': self._serve,
                'scheduler': self._run_scheduler,
                'sweep': self._sweep,
                'refresh': self._refresh,
                'list': self._list_playlists,
                'library': self._library,
                'config': self._show_config,
            }
            commands[args.command](args, settings)

        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            self._cleanup_resources()
            sys.exit(130)
        except Exception as e:
            logger.error(f"CLI error: {e}")
            self._cleanup_resources()
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
