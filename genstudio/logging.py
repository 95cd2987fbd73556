import logging
import os
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .config import CREDENTIAL_ENV_VARS, resolve_path

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
REDACTED = "***"
# Shorter values would mask ordinary words in log lines.
MIN_SECRET_LENGTH = 6

LOGGER = logging.getLogger("genstudio")
LOGGER_LOCK = threading.Lock()
CURRENT_CONFIG: Optional[tuple[Path, int]] = None
LOG_FILE_NAME = f"{time.strftime('%Y%m%d_%H%M%S', time.localtime())}_genstudio_pid{os.getpid()}.log"


class CredentialRedactionFilter(logging.Filter):
    """Replaces configured API keys in a record's message with a fixed mask.

    The environment is read per record, so keys exported after startup are
    masked as well.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        super().__init__()
        self._environ = environ

    def secrets(self) -> list[str]:
        env = os.environ if self._environ is None else self._environ
        values = []
        for names in CREDENTIAL_ENV_VARS.values():
            for name in names:
                value = str(env.get(name) or "").strip()
                if len(value) >= MIN_SECRET_LENGTH:
                    values.append(value)
        return values

    def filter(self, record: logging.LogRecord) -> bool:
        secrets = self.secrets()
        if not secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def get_log_file_path(settings: Dict[str, Any], base_dir: Path) -> Path:
    logs_dir = resolve_path(str(settings.get("paths", {}).get("logs_dir", "logs")), base_dir)
    return logs_dir / LOG_FILE_NAME


def _build_handlers(log_file: Path, level: int) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT)
    redaction = CredentialRedactionFilter()
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            filename=str(log_file),
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
            encoding="utf-8",
        ),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(redaction)
    return handlers


def setup_logger(settings: Dict[str, Any], base_dir: Path) -> None:
    """Point the package logger at this process's log file; a no-op when nothing changed."""
    global CURRENT_CONFIG
    log_file = get_log_file_path(settings, base_dir)
    level_name = str(settings.get("logging", {}).get("level", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with LOGGER_LOCK:
        if CURRENT_CONFIG == (log_file, level) and LOGGER.handlers:
            return
        for handler in list(LOGGER.handlers):
            LOGGER.removeHandler(handler)
            handler.close()
        LOGGER.setLevel(level)
        LOGGER.propagate = False
        for handler in _build_handlers(log_file, level):
            LOGGER.addHandler(handler)
        CURRENT_CONFIG = (log_file, level)
    LOGGER.info("logger initialized file=%s level=%s", str(log_file), level_name)


def get_logger(name: str) -> logging.Logger:
    return LOGGER.getChild(name)
