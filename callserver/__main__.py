from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from pathlib import Path

from callshared.protocol import DEFAULT_TCP_PORT, DEFAULT_TOKEN_PORT

from callserver.control_server import ControlServer
from callserver.session_manager import HEARTBEAT_TIMEOUT, SessionManager
from callserver.token_server import TokenServer

logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Signaling and token backend for video calls")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the signaling server")
    parser.add_argument("--tcp-port", type=int, default=DEFAULT_TCP_PORT, help="TCP signaling port")
    parser.add_argument("--token-host", default="127.0.0.1", help="Host for the token backend")
    parser.add_argument("--token-port", type=int, default=DEFAULT_TOKEN_PORT, help="Port for the token backend")
    parser.add_argument("--no-token-server", action="store_true", help="Run signaling only")
    parser.add_argument(
        "--heartbeat-timeout",
        type=float,
        default=HEARTBEAT_TIMEOUT,
        help="Seconds between stale-client sweeps; clients silent for twice this are dropped",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )

    session_manager = SessionManager(heartbeat_timeout=max(1.0, args.heartbeat_timeout))
    control_server = ControlServer(args.host, args.tcp_port, session_manager)
    token_server = None if args.no_token_server else TokenServer(host=args.token_host, port=args.token_port)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await control_server.start()
    if token_server is not None:
        await token_server.start()

    heartbeat_task = asyncio.create_task(session_manager.heartbeat_watcher())

    await stop_event.wait()

    logger.info("Stopping services")

    try:
        await session_manager.disconnect_all(reason="Server shutting down")
    except Exception:
        logger.exception("Failed to disconnect participants during shutdown")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        pass

    try:
        await control_server.stop()
    except Exception:
        logger.exception("Error stopping signaling server")

    if token_server is not None:
        try:
            await token_server.stop()
        except Exception:
            logger.exception("Error stopping token backend")

    logger.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
