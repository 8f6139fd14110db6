import argparse
import logging
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="planning-poker", description="Real-time planning poker sessions")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8422, help="Port (default: 8422)")
    parser.add_argument("--max-sessions", type=int, default=None, help="Concurrent session ceiling (default: 3)")
    parser.add_argument("--idle-timeout", type=float, default=None, help="Seconds of inactivity before a session expires (default: 600)")
    parser.add_argument("--grace-period", type=float, default=None, help="Seconds to wait for a disconnected facilitator (default: 300)")
    parser.add_argument("--db", default=None, help="Settings database path (default: ~/.planning_poker/settings.db)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    return parser


def main():
    args = build_parser().parse_args()
    log = logging.getLogger("planning_poker")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG if args.verbose else logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)

    import uvicorn
    from .server.app import create_app
    from .server.settings import SettingsStore

    overrides = {
        "sessions.max_active": args.max_sessions,
        "sessions.idle_timeout": args.idle_timeout,
        "grace.duration": args.grace_period,
    }
    settings = SettingsStore(Path(args.db).expanduser() if args.db else None)
    app = create_app(settings_store=settings, cli_overrides=overrides)
    print(f"  Local:   http://localhost:{args.port}")
    print()
    log.info(
        "starting planning-poker: max_sessions=%s idle_timeout=%s grace=%s",
        args.max_sessions or "default",
        args.idle_timeout or "default",
        args.grace_period or "default",
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
