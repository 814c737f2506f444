from __future__ import annotations

import logging
import re
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from thermalwatch.config import load_settings
from thermalwatch.monitor import CameraError, ThermalMonitor


class _SensitiveDataFilter(logging.Filter):
    """Redact sensitive Telegram bot token fragments from log messages."""

    _TELEGRAM_BOT_PATH_RE = re.compile(r"(https://api\.telegram\.org/bot)[^/\s]+")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._TELEGRAM_BOT_PATH_RE.sub(r"\1<redacted>", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def setup_logging() -> None:
    """Configure console + rotating file logging."""
    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "thermalwatch.log"

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(_SensitiveDataFilter())

    file_handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_SensitiveDataFilter())

    root.addHandler(stream_handler)
    root.addHandler(file_handler)

    # Avoid third-party HTTP request logging that can leak full Telegram URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> int:
    setup_logging()
    settings = load_settings(".secrets")
    monitor = ThermalMonitor(settings)

    def _request_stop(signum, _frame) -> None:
        logging.info("Received signal %d, stopping...", signum)
        monitor.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    try:
        monitor.run()
    except CameraError as exc:
        logging.error("Camera failure: %s", exc)
        return 1
    except OSError as exc:
        logging.error("Recording failure: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
