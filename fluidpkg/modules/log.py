import logging
import os
import traceback
from logging.handlers import RotatingFileHandler
from datetime import datetime

# -------------------------
# Initial setup
# -------------------------
LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_root_logger = logging.getLogger("fluidpkg")
_root_logger.setLevel(logging.DEBUG)


class ColorFormatter(logging.Formatter):
    """Colored console formatter"""
    COLORS = {
        logging.DEBUG: "\033[36m",   # cyan
        logging.INFO: "\033[32m",    # green
        logging.WARNING: "\033[33m", # yellow
        logging.ERROR: "\033[31m",   # red
        logging.CRITICAL: "\033[41m" # red background
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        module = f"[{record.name}]" if record.name != "fluidpkg" else ""
        msg = super().format(record)
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{self.RESET} {msg}"


def _setup_handlers():
    """Console handler; the file handler is opt-in via enable_file_logging()."""
    if any(getattr(h, "_fluidpkg_console", False) for h in _root_logger.handlers):
        return

    ch = logging.StreamHandler()
    ch.setLevel(logging.WARNING)
    ch.setFormatter(ColorFormatter("%(message)s"))
    ch._fluidpkg_console = True
    _root_logger.addHandler(ch)


_setup_handlers()


# -------------------------
# Public API
# -------------------------
def get_logger(name: str = "fluidpkg"):
    """Child logger (e.g. log.get_logger("transaction"))"""
    if name == "fluidpkg":
        return _root_logger
    return _root_logger.getChild(name)


def enable_file_logging(log_dir: str, filename: str = "fluidpkg.log") -> str:
    """Attach a rotating file handler under log_dir; returns the log file path."""
    os.makedirs(log_dir, exist_ok=True)
    logfile = os.path.join(log_dir, filename)
    for handler in _root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == os.path.abspath(logfile):
            return logfile

    fh = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    _root_logger.addHandler(fh)
    return logfile


def set_level(level: str):
    """Change the console level"""
    lvl = LEVELS.get(level.lower())
    if lvl is None:
        raise ValueError(f"Invalid level: {level}")
    for handler in _root_logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(lvl)


def exception(msg: str):
    """Log an error with the full traceback"""
    tb = traceback.format_exc()
    _root_logger.error("%s\n%s", msg, tb)


def debug(msg, *args, **kwargs): _root_logger.debug(msg, *args, **kwargs)
def info(msg, *args, **kwargs): _root_logger.info(msg, *args, **kwargs)
def warn(msg, *args, **kwargs): _root_logger.warning(msg, *args, **kwargs)
def error(msg, *args, **kwargs): _root_logger.error(msg, *args, **kwargs)
def critical(msg, *args, **kwargs): _root_logger.critical(msg, *args, **kwargs)
