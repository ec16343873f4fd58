from __future__ import annotations

import argparse
import asyncio
import os
import sys

from .config import AppConfig
from .logging_config import setup_logging


def _run_relay(host: str, port: int) -> int:
	from .net.relay_server import RelayServer

	try:
		asyncio.run(RelayServer(host=host, port=port).serve_forever())
	except KeyboardInterrupt:
		pass
	return 0


def main(argv: list[str] | None = None) -> int:
	defaults = AppConfig.from_env()

	parser = argparse.ArgumentParser(description="tourcall voice-call client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use TOURCALL_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=defaults.server_url, help="WebSocket signaling URL")
	parser.add_argument("--room", default=defaults.room, help="Chat room whose members can call each other")
	parser.add_argument("--user-id", default=defaults.user_id, help="Your user id in the room")
	parser.add_argument("--name", default=defaults.name, help="Display name shown to the callee")
	parser.add_argument("--target", default=None, help="User id to call (prefills the window)")
	parser.add_argument("--target-name", default=None, help="Display name of --target")
	parser.add_argument("--relay", action="store_true", help="Run the signaling relay instead of the window")
	parser.add_argument("--host", default=os.environ.get("TOURCALL_RELAY_HOST", "127.0.0.1"), help="Relay bind host")
	parser.add_argument(
		"--port",
		type=int,
		default=int(os.environ.get("TOURCALL_RELAY_PORT", "8765")),
		help="Relay bind port",
	)
	args = parser.parse_args(argv)

	setup_logging(args.log_level)

	if args.relay:
		return _run_relay(args.host, args.port)

	try:
		from .ui.app import CallClientApp, create_qt_app
	except Exception as e:
		print(f"Failed to import UI dependencies: {e}")
		print("Install the client with: pip install tourcall")
		return 2

	cfg = AppConfig(
		server_url=args.server_url,
		room=args.room,
		user_id=args.user_id,
		name=args.name,
		target_id=args.target,
		target_name=args.target_name,
		call=defaults.call,
	)
	qt_app = create_qt_app()
	controller = CallClientApp(cfg)
	controller.start()
	qt_app.aboutToQuit.connect(controller.shutdown)

	return qt_app.exec()


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
