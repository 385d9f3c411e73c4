from __future__ import annotations

import argparse
import asyncio
import logging

from callshared.protocol import DEFAULT_TCP_PORT, DEFAULT_TOKEN_URL

from .app import ClientApp


def main() -> None:
    parser = argparse.ArgumentParser(description="Video call tile client")
    parser.add_argument("server_host", help="Hostname or IP of the signaling server")
    parser.add_argument("--tcp-port", type=int, default=DEFAULT_TCP_PORT, help="Signaling server TCP port")
    parser.add_argument("--token-url", default=DEFAULT_TOKEN_URL, help="Base URL of the token backend")
    parser.add_argument("--ui-host", default="127.0.0.1", help="Host to bind the local UI web server")
    parser.add_argument("--ui-port", type=int, default=8100, help="Port for the local UI web server")
    parser.add_argument("--channel", help="Optional channel name to pre-fill in the UI")
    parser.add_argument("--no-browser", action="store_true", help="Do not open the UI in a browser")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    app = ClientApp(
        args.server_host,
        args.tcp_port,
        token_url=args.token_url,
        prefill_channel=args.channel,
    )

    try:
        asyncio.run(app.run(host=args.ui_host, port=args.ui_port, open_browser=not args.no_browser))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
