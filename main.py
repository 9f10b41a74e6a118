"""
main.py: Single entry point.

  shelf-resolver [serve]        → run the HTTP API (default)
  shelf-resolver token ...      → manage API tokens   (see admin.py)
  shelf-resolver key ...        → manage credentials  (see admin.py)

Serving builds the store, the vision provider and the catalog backend once,
then runs the HTTP API in a single asyncio event loop until SIGINT/SIGTERM.

A missing provider or catalog key does not stop startup: the affected
endpoints answer DetectionUnavailable / CatalogUnavailable until the key is
configured and the service restarted.
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

import admin
import config
from database import DetectionStore
from errors import CatalogUnavailable, DetectionUnavailable

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "service.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    store = DetectionStore.in_data_dir(config.DATA_DIR)
    try:
        await store.init_db()
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    import key_store
    for name, value in (await key_store.get_all_keys(store)).items():
        logger.info("Credential %-20s %s", name, key_store.mask(value))

    # ── External collaborators ────────────────────────────────────────────────
    from catalog import build_backend
    from providers.manager import build_provider

    provider = None
    try:
        provider = await build_provider(store)
    except DetectionUnavailable as exc:
        logger.warning("Vision provider not available: %s", exc)

    backend = None
    try:
        backend = await build_backend(store)
    except CatalogUnavailable as exc:
        logger.warning("Catalog backend not available: %s", exc)

    if not config.API_TOKENS:
        logger.warning("API_TOKENS is empty; only tokens stored in the DB will be accepted")

    from api_server import start_server
    runner = await start_server(store, provider, backend)

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    logger.info("Service is running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    logger.info("Shutting down…")
    await runner.cleanup()
    logger.info("Goodbye.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shelf product detection & resolution service")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the HTTP API (default)")
    admin.add_subcommands(subparsers)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    if args.command in (None, "serve"):
        try:
            asyncio.run(run())
        except KeyboardInterrupt:
            pass
        return 0

    store = DetectionStore.in_data_dir(config.DATA_DIR)
    return asyncio.run(admin.run_command(store, args))


if __name__ == "__main__":
    sys.exit(main())
