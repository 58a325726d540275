from __future__ import annotations

import faulthandler
import logging
import logging.handlers
import os
import sys
import threading
from pathlib import Path

import uvicorn

from waste_tracking.bootstrap import build_runtime
from waste_tracking.config import Settings, settings
from waste_tracking.presentation.api.app import create_app

log = logging.getLogger(__name__)
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOG_FILE_MAX_BYTES = 20 * 1024 * 1024
_LOG_FILE_BACKUPS = 5


def _log_handlers(config: Settings) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if config.log_to_console:
        handlers.append(logging.StreamHandler(stream=sys.stdout))
    if config.log_file.strip():
        path = Path(config.log_file.strip()).resolve()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                path,
                maxBytes=_LOG_FILE_MAX_BYTES,
                backupCount=_LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )
    return handlers


def configure_logging(config: Settings) -> None:
    level = logging.getLevelName(config.log_level.strip().upper() or "INFO")
    if not isinstance(level, int):
        level = logging.INFO
    handlers = _log_handlers(config)
    formatter = logging.Formatter(_LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    # force=True replaces handlers left by an earlier configuration.
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    log.info(
        "Logging configured level=%s handlers=%s file=%s",
        logging.getLevelName(level),
        len(handlers),
        config.log_file.strip() or "<disabled>",
    )


def _log_uncaught(exc_type, exc_value, exc_traceback, *, where: str) -> None:
    log.critical("Uncaught exception where=%s", where, exc_info=(exc_type, exc_value, exc_traceback))


def install_crash_hooks() -> None:
    sys.excepthook = lambda *exc_info: _log_uncaught(*exc_info, where="main")
    threading.excepthook = lambda args: _log_uncaught(
        args.exc_type,
        args.exc_value,
        args.exc_traceback,
        where=args.thread.name if args.thread else "<unknown thread>",
    )
    if sys.stderr is not None:
        faulthandler.enable(all_threads=True)


def main() -> int:
    configure_logging(settings)
    install_crash_hooks()
    log.info(
        "Waste tracking API starting pid=%s host=%s port=%s storage=%s fanout=%s",
        os.getpid(),
        settings.host,
        settings.port,
        settings.storage_backend,
        settings.fanout_backend,
    )
    app = create_app(build_runtime(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
    log.info("Waste tracking API stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
