#!/usr/bin/env python3
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from absl import app, flags
from flask import Flask
from waitress.server import create_server

from cadre.catalog import CatalogCache
from cadre.config import config_load
from cadre.logging_utils import setup_logging
from cadre.scanner import Scanner
from cadre.server import create_app
from cadre.sync import SyncThread
from cadre.watcher import RescanCoordinator, Watcher
from cadre.weather import WeatherService

flags.DEFINE_string("config", "config.yaml", "path to YAML config file")
flags.DEFINE_integer("threads", 8, "number of waitress worker threads")

FLAGS = flags.FLAGS

logger = logging.getLogger(__name__)

exit_event = threading.Event()


@dataclass
class Services:
    exit_event: threading.Event
    catalog: CatalogCache
    scanner: Scanner
    coordinator: RescanCoordinator
    watcher: Optional[Watcher]
    weather: WeatherService
    sync_thread: Optional[SyncThread]
    flask_app: Flask


def build_services(config: Dict, event: threading.Event) -> Services:
    """Wires the caches, the rescan path and the web app together."""
    catalog = CatalogCache()
    scanner = Scanner(config["photosDir"], incremental=config["scanner"]["incremental"])
    watcher_config = config["watcher"]
    coordinator = RescanCoordinator(
        scanner,
        catalog,
        event,
        debounce_s=watcher_config["debounceSeconds"],
        queue_size=watcher_config["queueSize"],
    )
    watcher = None
    if watcher_config["enabled"]:
        watcher = Watcher(config["photosDir"], coordinator.submit)
        coordinator.watcher = watcher

    weather = WeatherService(config["weather"])

    sync_thread = None
    if config["googlePhotos"]["enabled"]:
        sync_thread = SyncThread(
            config["googlePhotos"],
            config["photosDir"],
            event,
            on_files_written=lambda: coordinator.request_rescan("google_photos_sync"),
        )

    flask_app = create_app(config, catalog, weather)
    return Services(event, catalog, scanner, coordinator, watcher, weather, sync_thread, flask_app)


def start_services(services: Services):
    # The first scan runs before serving so that clients never see an empty
    # catalog for a populated directory.
    services.coordinator.rescan_now()
    if services.watcher:
        services.watcher.start()
    services.coordinator.start()
    logger.info(f"Starting thread {services.coordinator.name}")
    if services.sync_thread:
        services.sync_thread.start()
        logger.info(f"Starting thread {services.sync_thread.name}")
    else:
        logger.info("Google Photos sync is disabled.")


def stop_services(services: Services):
    logger.info("Starting application shutdown sequence...")
    services.exit_event.set()
    if services.watcher:
        services.watcher.stop()
    for thread in (services.coordinator, services.sync_thread):
        if thread and thread.is_alive():
            thread.join(timeout=10)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not exit gracefully.")
    logger.info("Application shutdown complete.")


def signal_handler_exit(signum, frame):
    """Signal handler for SIGINT and SIGTERM to gracefully shut down."""
    signal_name = signal.Signals(signum).name
    if exit_event.is_set():
        logger.warning("Forcing shutdown.")
        sys.exit(0)
    logger.info(f"{signal_name} received. Initiating graceful shutdown...")
    exit_event.set()


def run_http_server(server):
    try:
        server.run()
    except Exception as e:
        if not exit_event.is_set():
            logger.error(f"HTTP server crashed: {e}", exc_info=True)
            exit_event.set()
    finally:
        logger.info("HTTP server stopped.")


def main(argv):
    del argv  # Unused.

    config = config_load(FLAGS.config)
    setup_logging(config["logging"])
    logger.info(f"Configuration loaded from {FLAGS.config}")

    exit_event.clear()
    services = build_services(config, exit_event)

    host, port = config["host"], config["port"]
    try:
        server = create_server(services.flask_app, host=host, port=port, threads=FLAGS.threads)
    except OSError as e:
        logger.critical(f"Cannot listen on {host}:{port}: {e}")
        sys.exit(1)

    signal.signal(signal.SIGINT, signal_handler_exit)
    signal.signal(signal.SIGTERM, signal_handler_exit)

    start_services(services)
    http_server_thread = threading.Thread(
        target=run_http_server, args=(server,), daemon=True, name="http_server"
    )
    http_server_thread.start()
    logger.info(f"Photo frame server running at http://{host}:{port}")

    try:
        while not exit_event.is_set():
            exit_event.wait(1)
    finally:
        logger.info("Main loop exiting. Cleaning up...")
        try:
            server.close()
        except Exception as e:
            logger.warning(f"Error closing HTTP server: {e}")
        stop_services(services)


def run():
    """Entry point for the cadre console script."""
    app.run(main)


if __name__ == "__main__":
    run()
