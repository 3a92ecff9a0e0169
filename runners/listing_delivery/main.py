"""
Listing delivery runner entry point.

    python -m runners.listing_delivery.main serve
    python -m runners.listing_delivery.main worker
    python -m runners.listing_delivery.main import-cookies "<Cookie header>" app.aryeo.com
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading

from .app import AppContext
from .config import DeliveryConfig
from .storage_state import save_storage_state, storage_state_from_cookie_header

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("delivery.main")


def _serve(config: DeliveryConfig) -> int:
    from .server.app import create_app

    try:
        config.validate_for_serve()
    except ValueError as exc:
        logger.error("config_invalid error=%s", exc)
        return 2
    ctx = AppContext(config)
    ctx.start()
    try:
        app = create_app(ctx)
        logger.info("serving host=%s port=%d safe_mode=%s", config.host, config.port, config.safe_mode)
        app.run(host=config.host, port=config.port, threaded=True, use_reloader=False)
    finally:
        ctx.shutdown()
    return 0


def _worker(config: DeliveryConfig) -> int:
    ctx = AppContext(config)
    ctx.start()
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
    finally:
        ctx.shutdown()
    return 0


def _import_cookies(config: DeliveryConfig, header: str, domain: str, path: str | None) -> int:
    try:
        state = storage_state_from_cookie_header(header, domain)
        result = save_storage_state(state, path or config.storage_state_path)
    except ValueError as exc:
        logger.error("import_cookies_failed error=%s", exc)
        return 1
    print(json.dumps(result, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="listing-delivery")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("serve", help="HTTP API plus workers")
    sub.add_parser("worker", help="workers only")
    imp = sub.add_parser("import-cookies", help="write a storage state from a Cookie header")
    imp.add_argument("header")
    imp.add_argument("domain")
    imp.add_argument("--out", default=None, help="output path (default: STORAGE_STATE_PATH)")
    args = parser.parse_args(argv)

    config = DeliveryConfig.from_env()
    if args.command == "serve":
        return _serve(config)
    if args.command == "worker":
        return _worker(config)
    return _import_cookies(config, args.header, args.domain, args.out)


if __name__ == "__main__":
    sys.exit(main())
