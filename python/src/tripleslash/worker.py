"""
Worker process entry point.

    python -m tripleslash.worker <channel-id>

Connects to the channel the host created, answers method signature requests
until the host closes the channel, then exits. Exit codes:

    0   the channel ended normally
    -1  wrong number of arguments
    -2  could not connect to the host's channel in time
    -3  the message loop failed
"""

import sys
import traceback
from typing import List, Optional

from .core.channel import Channel
from .core.config import TripleSlashConfig, build_logger, load_config
from .core.errors import TransportError
from .core.logging import LogEvent, stderr_handler
from .core.server import RequestServer
from .parser import SignatureParser

EXIT_OK = 0
EXIT_BAD_ARGUMENTS = -1
EXIT_CONNECT_FAILED = -2
EXIT_LOOP_FAILED = -3


def main(argv: Optional[List[str]] = None) -> int:
    """Run the worker; returns the process exit code."""
    if argv is None:
        argv = sys.argv[1:]

    if len(argv) != 1:
        # Checked before the config is loaded
        logger = build_logger(TripleSlashConfig(), component="worker", handler=stderr_handler)
        logger.fatal(
            LogEvent.CONFIG,
            f"Expected exactly one argument (the channel id), got {len(argv)}: {argv}",
            metadata={"argv": list(argv)},
        )
        return EXIT_BAD_ARGUMENTS

    try:
        config = load_config()
    except (OSError, ValueError) as e:
        print(f"FATAL: Failed to load configuration: {e}", file=sys.stderr)
        return EXIT_LOOP_FAILED

    logger = build_logger(config, component="worker", handler=stderr_handler)

    identifier = argv[0]
    try:
        channel = Channel.connect(identifier, config.parser_timeout)
    except TransportError as e:
        logger.fatal(
            LogEvent.CHANNEL_CONNECT,
            f"Failed to connect to channel {identifier}: {e}",
            channel_id=identifier,
            error=str(e),
            error_type=type(e).__name__,
        )
        return EXIT_CONNECT_FAILED

    logger.info(LogEvent.CHANNEL_CONNECT, "Connected to host", channel_id=identifier)

    with channel:
        server = RequestServer(channel, parser=SignatureParser(logger=logger), logger=logger)
        try:
            server.serve()
        except Exception as e:
            logger.fatal(
                LogEvent.SERVER_STOP,
                f"Message loop failed: {e}",
                channel_id=identifier,
                error=str(e),
                error_type=type(e).__name__,
                stack_trace=traceback.format_exc(),
            )
            return EXIT_LOOP_FAILED

    logger.info(LogEvent.SERVER_STOP, "Shutting down", channel_id=identifier)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
