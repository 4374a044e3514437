from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from filebroker.client import BrokerClient
from filebroker.config import BrokerConfig, load_config
from filebroker.diagnostics import Diagnostics, format_report
from filebroker.engine import Broker
from filebroker.health import HealthMonitor
from filebroker.responder import load_responder, template_responder

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="File-based request/response broker")
    parser.add_argument("--config", default=None, help="Path to broker config JSON")
    parser.add_argument("--root", default=None, help="Shared directory (default: $FILEBROKER_ROOT or ./communication)")
    parser.add_argument("--log-level", default=os.getenv("FILEBROKER_LOG_LEVEL", "INFO"))
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the shared directory layout")

    enqueue = sub.add_parser("enqueue", help="Write a request artifact")
    enqueue.add_argument("--instruction", required=True)
    enqueue.add_argument("--session-id", default=None)

    wait = sub.add_parser("wait", help="Wait for a response artifact")
    wait.add_argument("--session-id", required=True)
    wait.add_argument("--timeout", type=float, default=None)

    process = sub.add_parser("process", help="Handle every waiting request once, then exit")
    process.add_argument("--responder", default=None, help="module:attribute of a custom responder")

    serve = sub.add_parser("serve", help="Run the broker and health monitor until interrupted")
    serve.add_argument("--responder", default=None, help="module:attribute of a custom responder")

    sub.add_parser("health", help="One-shot health check of the shared directory")

    diagnose = sub.add_parser("diagnose", help="Offline diagnostic report")
    diagnose.add_argument("--json", action="store_true", dest="as_json")
    diagnose.add_argument("--stale-after", type=float, default=None, help="Stale threshold in seconds")

    http = sub.add_parser("http", help="Serve the HTTP front door")
    http.add_argument("--host", default="127.0.0.1")
    http.add_argument("--port", type=int, default=5001)

    return parser


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def _root(args: argparse.Namespace) -> Path:
    return Path(args.root or os.getenv("FILEBROKER_ROOT", "communication"))


def _print(value: Any) -> None:
    print(json.dumps(value, indent=2))


def _build_broker(args: argparse.Namespace, config: BrokerConfig) -> Broker:
    responder = load_responder(args.responder) if args.responder else template_responder
    return Broker.build(_root(args), config=config, responder=responder)


def _serve(broker: Broker) -> None:
    monitor = HealthMonitor(broker)
    stop = threading.Event()

    def shutdown_handler(signum, frame):
        logging.getLogger(__name__).info("Received signal %s, shutting down...", signum)
        stop.set()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)

    broker.start()
    monitor.start()
    try:
        while not stop.is_set():
            stop.wait(1)
    finally:
        monitor.stop()
        broker.stop()


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Invalid config: {exc}")

    if args.command == "init":
        broker = Broker.build(_root(args), config=config)
        broker.directory.ensure_layout()
        print(f"Initialized shared directory {broker.root}")
        return

    if args.command == "enqueue":
        try:
            session_id = BrokerClient(_root(args), config).enqueue(args.instruction, session_id=args.session_id)
        except ValueError as exc:
            raise SystemExit(str(exc))
        _print({"sessionId": session_id})
        return

    if args.command == "wait":
        try:
            result = BrokerClient(_root(args), config).wait_for_response(args.session_id, timeout=args.timeout)
        except ValueError as exc:
            raise SystemExit(str(exc))
        _print(result.to_dict())
        if not result.completed:
            raise SystemExit(1)
        return

    if args.command == "process":
        broker = _build_broker(args, config)
        broker.directory.ensure_layout()
        handled = broker.process_pending()
        _print({"handled": handled, **broker.snapshot()})
        return

    if args.command == "serve":
        _serve(_build_broker(args, config))
        return

    if args.command == "health":
        broker = Broker.build(_root(args), config=config)
        _print(
            {
                "directory_ok": broker.directory.reachable(),
                "pending_requests": len(broker.directory.list_requests()),
                "responses": len(broker.directory.list_responses()),
            }
        )
        return

    if args.command == "diagnose":
        if args.stale_after is not None:
            config = config.replace(stale_after=args.stale_after)
        report = Diagnostics(_root(args), config).run()
        if args.as_json:
            _print(report)
        else:
            print(format_report(report))
        return

    if args.command == "http":
        from filebroker.api import create_app

        create_app(BrokerClient(_root(args), config)).run(host=args.host, port=args.port)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
