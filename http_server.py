#!/usr/bin/env python3
"""
mixwell HTTP Server Runner
"""

from mixwell.crosscutting.config import Settings
from mixwell.crosscutting.logging import setup_logging
from mixwell.interfaces.http import HTTPServer
from mixwell.interfaces.runtime import Runtime


def main():
    """Run the HTTP server with the scheduler."""
    settings = Settings.from_env()
    setup_logging(settings.log_level, settings.log_file, settings.log_format)
    runtime = Runtime(settings)
    runtime.start()
    server = HTTPServer(
        runtime,
        host='localhost',
        port=3000,
        debug=False
    )
    try:
        server.run()
    finally:
        runtime.shutdown()


if __name__ == '__main__':
    main()
