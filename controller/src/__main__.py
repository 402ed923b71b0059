from __future__ import annotations

import logging
import os
import signal
import threading

from controller.src.classdata import ClassDataError, ClassDataStore
from controller.src.controller import build_controller_from_env
from controller.src.health import start_admin_server
from controller.src.kube import build_core_client, load_kube_configuration
from controller.src.metrics import METRICS
from shared.src.logs import configure_logging
from shared.src.settings import env_int

RUNTIME_VERSION = "0.3.0"
DEFAULT_CLASSES_DIRECTORY = "/etc/config/classes"


def main() -> None:
    """Controller entrypoint: load classes, start the admin server, and run the reconciler."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    classes_directory = os.getenv("CLASSES_DIRECTORY", DEFAULT_CLASSES_DIRECTORY)
    try:
        class_data = ClassDataStore.from_directory(classes_directory)
    except ClassDataError:
        logger.exception("Unable to load telegraf classes from %s", classes_directory)
        raise SystemExit(1) from None

    load_kube_configuration()
    controller = build_controller_from_env(core_api=build_core_client(), class_data=class_data)

    health_port = env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535)
    admin_server = start_admin_server(
        ready=controller.ready,
        port=health_port,
        reload_fn=class_data.reload,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    def _handle_reload(signum: int, frame: object) -> None:
        logger.info("Received signal %d, reloading telegraf classes", signum)
        try:
            class_data.reload(blocking=False)
        except ClassDataError:
            logger.warning("Keeping previously loaded telegraf classes")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGHUP, _handle_reload)

    controller.run_forever(shutdown_event=shutdown_event)

    admin_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
