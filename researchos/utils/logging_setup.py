# Rev 0.1.0

# researchos – logging setup (Rev 0.1.0)
from __future__ import annotations
import logging, os, sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from PySide6.QtCore import qInstallMessageHandler, QtMsgType

APP_NAME = "researchos"
FMT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"

_QT_LEVELS = {
    QtMsgType.QtDebugMsg: logging.DEBUG,
    QtMsgType.QtInfoMsg: logging.INFO,
    QtMsgType.QtWarningMsg: logging.WARNING,
    QtMsgType.QtCriticalMsg: logging.ERROR,
    QtMsgType.QtFatalMsg: logging.CRITICAL,
}


def _qt_handler(msg_type, context, message):
    logging.getLogger("qt").log(_QT_LEVELS.get(msg_type, logging.INFO), message)


def _state_dir(app: str = APP_NAME) -> Path:
    base = os.environ.get("XDG_STATE_HOME", os.path.expanduser("~/.local/state"))
    d = Path(base) / app / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_logger(name: str) -> logging.Logger:
    """Loggers live under the `researchos.` namespace so one level knob drives them all."""
    if name.startswith(APP_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{APP_NAME}.{name}")


def setup_logging(app_name: str = APP_NAME) -> Path:
    # Level via env (DEBUG/INFO/WARNING/ERROR), default INFO
    level_name = os.environ.get("RESEARCHOS_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    log_dir = _state_dir(app_name)
    logfile = log_dir / f"{app_name}.log"

    root = logging.getLogger()
    root.setLevel(level)

    # File: rotate at 5MB, keep 7 backups
    fh = RotatingFileHandler(logfile, maxBytes=5_000_000, backupCount=7, encoding="utf-8")
    fh.setFormatter(logging.Formatter(FMT, DATEFMT))
    fh.setLevel(level)
    root.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(logging.Formatter(FMT, DATEFMT))
    ch.setLevel(level)
    root.addHandler(ch)

    # Uncaught exceptions → log as ERROR; the Qt loop keeps running
    def _excepthook(exctype, value, tb):
        logging.getLogger("unhandled").error("Uncaught exception", exc_info=(exctype, value, tb))
    sys.excepthook = _excepthook

    qInstallMessageHandler(_qt_handler)

    get_logger(__name__).info("Logging initialized at %s; file: %s", level_name, logfile)
    return logfile
