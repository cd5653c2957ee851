"""swcache - Service-worker style resource caching and offline delivery."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - register the worker and start the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("swcache %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .config import ConfigError, load_config
    from .proxy import ProxyError, ProxyServer
    from .refresher import StaticRefresher
    from .store import StoreError, init_store
    from .worker import CacheWorker, Registration, recover_previous_generation

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Open cache storage
    try:
        conn = init_store(config.storage.path)
        logger.info("Cache store opened at %s", config.storage.path)
    except StoreError as e:
        logger.error("Cache store error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Install and activate the worker generation
    registration = Registration()
    worker = CacheWorker(config, conn)
    if registration.register(worker):
        logger.info("Worker generation %s is %s", worker.version, worker.state)
    elif recover_previous_generation(registration, config, conn) is None:
        logger.warning("Install failed; serving without a worker (requests pass through)")

    # 5. Start proxy and static refresh
    proxy: Optional[ProxyServer] = None
    refresher: Optional[StaticRefresher] = None

    try:
        if config.proxy.enabled:
            try:
                proxy = ProxyServer(config, registration)
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)
        else:
            logger.warning("Proxy disabled in configuration; nothing to serve")

        if config.worker.refresh_interval > 0:
            refresher = StaticRefresher(registration, config.worker.refresh_interval)
            refresher.start()

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup
        logger.info("Shutting down components...")

        if refresher is not None:
            refresher.stop()

        if proxy is not None:
            proxy.stop()

        if registration.active is not None:
            registration.active.wait_for_background(timeout=5.0)

        conn.close()
        logger.info("Cache store closed")

        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - pre-warm the cache for the current generation."""
    _setup_logging(args.verbose)

    from .lifecycle import InstallError
    from .store import StoreError, init_store
    from .worker import CacheWorker

    config = _load_config_or_exit(args.config)

    try:
        conn = init_store(config.storage.path)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        worker = CacheWorker(config, conn)
        cached = worker.install()
        deleted = worker.activate()
        print(f"Installed generation {worker.version}: {cached} entries cached.")
        if deleted:
            print(f"Deleted {len(deleted)} old partition(s): {', '.join(deleted)}")
    except InstallError as e:
        print(f"Error: install failed, previous generation left untouched - {e}")
        sys.exit(1)
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()


def _cmd_caches(args: argparse.Namespace) -> None:
    """Execute the caches command - list partitions with their entry counts."""
    from pathlib import Path

    from .manifest import build_manifests
    from .store import StoreError, count_entries, init_store, list_partitions

    config = _load_config_or_exit(args.config)

    if config.storage.path != ":memory:" and not Path(config.storage.path).exists():
        print(f"Error: Cache store not found at {config.storage.path}")
        sys.exit(1)

    manifest, _ = build_manifests(config)
    try:
        conn = init_store(config.storage.path)
        try:
            names = list_partitions(conn)
            if not names:
                print("No partitions.")
                return
            for name in names:
                marker = "*" if manifest.is_current(name) else " "
                print(f"{marker} {name:<40} {count_entries(conn, name):>6} entries")
            print(f"\nCurrent generation: {manifest.version}")
        finally:
            conn.close()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_clear(args: argparse.Namespace) -> None:
    """Execute the clear command - delete every partition."""
    from .store import StoreError, delete_all_partitions, init_store

    config = _load_config_or_exit(args.config)

    try:
        conn = init_store(config.storage.path)
        try:
            deleted = delete_all_partitions(conn)
        finally:
            conn.close()
    except StoreError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Deleted {deleted} partition(s).")


def main() -> None:
    """Main entry point for the swcache package."""
    parser = argparse.ArgumentParser(
        description="swcache - Service-worker style resource caching and offline delivery"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"swcache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Install the worker and start the caching proxy (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Install subcommand
    install_parser = subparsers.add_parser(
        "install",
        help="Pre-warm the cache for the current generation and prune old ones",
    )
    install_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    install_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    install_parser.set_defaults(func=_cmd_install)

    # Caches subcommand
    caches_parser = subparsers.add_parser(
        "caches",
        help="List cache partitions and their entry counts",
    )
    caches_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    caches_parser.set_defaults(func=_cmd_caches)

    # Clear subcommand
    clear_parser = subparsers.add_parser(
        "clear",
        help="Delete every cache partition",
    )
    clear_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    clear_parser.set_defaults(func=_cmd_clear)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
