import argparse
import logging
import os
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="promptroom", description="Collaborative prompt rooms with a shared AI")
    parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8421, help="Port (default: 8421)")
    parser.add_argument("--db", default=None, help="SQLite database path (default: ~/.promptroom/promptroom.db)")
    parser.add_argument("--model", default=None, help="Responder model (overrides the stored setting)")
    parser.add_argument("--aux-model", default=None, help="Auxiliary classification/summary model")
    parser.add_argument("--base-url", default=None, help="OpenAI-compatible API base URL")
    parser.add_argument("--no-stream", action="store_true", help="Deliver AI replies in one piece instead of streaming")
    parser.add_argument("--send-timeout", type=float, default=None, help="WebSocket send timeout in seconds")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("cleanup", help="Delete every room, user, chat and message")

    return parser


def _get_local_ip() -> str | None:
    import socket
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return None


def main():
    args = build_parser().parse_args()
    log = logging.getLogger("promptroom")
    log.setLevel(logging.DEBUG)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(fmt)
    log.addHandler(handler)

    from .server.settings import SettingsStore
    from .server.store import RoomStore

    db_path = Path(args.db).expanduser() if args.db else None
    store = RoomStore(db_path)

    if args.command == "cleanup":
        counts = store.clear_all()
        for table, count in counts.items():
            print(f"  {table}: {count} deleted")
        print("Database cleanup completed")
        return

    api_key = os.environ.get("PROMPTROOM_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        log.error("PROMPTROOM_API_KEY (or OPENAI_API_KEY) is not set; the responder cannot start")
        sys.exit(1)

    settings = SettingsStore(store.db_path)
    settings.apply_overrides({
        "responder.model": args.model,
        "auxiliary.model": args.aux_model,
        "responder.stream": False if args.no_stream else None,
        "timeouts.send": args.send_timeout,
    })
    effective = settings.get_effective()

    import uvicorn
    from .responders import create_backends
    from .server.app import create_app

    backends = create_backends(
        effective,
        api_key=api_key,
        base_url=args.base_url or os.environ.get("PROMPTROOM_BASE_URL"),
        search_api_key=os.environ.get("SEARCH_API_KEY"),
        search_engine_id=os.environ.get("SEARCH_ENGINE_ID"),
    )
    app = create_app(
        room_store=store,
        settings_store=settings,
        responder=backends.responder,
        auxiliary=backends.auxiliary,
        search=backends.search,
    )
    print(f"  Local:   http://localhost:{args.port}")
    lan_ip = _get_local_ip()
    if lan_ip and args.host != "127.0.0.1":
        print(f"  Network: http://{lan_ip}:{args.port}")
    print()
    log.info(
        "starting promptroom: model=%s aux_model=%s stream=%s search=%s db=%s",
        effective["responder.model"],
        effective["auxiliary.model"],
        effective["responder.stream"],
        backends.search.configured,
        store.db_path,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)


if __name__ == "__main__":
    main()
