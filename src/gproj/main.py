"""Runtime wiring: logging setup and the async reconciliation entry point.

Progress narration ("created my-project", "enabling 3 APIs:") is emitted as
INFO log records. In text mode they are printed plainly to stdout so an
operator sees which remote side effects happened. In JSON mode every record
is one JSON object per line with its structured ``extra`` fields.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, LogFormat
from .errors import ReconcileCancelledError
from .gcp import GoogleCloud
from .models import ProjectSpec
from .reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class NarrationFormatter(logging.Formatter):
    """Plain messages for INFO, level-prefixed for everything else."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        if record.levelno == logging.INFO or message.lower().startswith(("warning", "error")):
            return message
        return f"{record.levelname.lower()}: {message}"


def setup_logging(config: Config) -> None:
    """Configure the root logger for the chosen output format."""
    handler = logging.StreamHandler(sys.stdout)
    if config.log_format is LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(NarrationFormatter())

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if config.verbose else logging.INFO)

    # Reduce noise from Google client libraries
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def reconcile_project(
    config: Config,
    spec: ProjectSpec,
    cloud: GoogleCloud,
) -> ReconcileResult:
    """Reconcile once, cancelling cleanly on SIGINT or SIGTERM.

    Raises:
        ReconcileCancelledError: A signal aborted the run.
        GprojError: Any failure surfaced by the reconciler.
    """
    reconciler = Reconciler(config, cloud)
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal %s, cancelling", sig.name, extra={"signal": sig.name})
        if task is not None:
            task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler, sig)
            installed.append(sig)

    try:
        return await reconciler.reconcile(spec)
    except asyncio.CancelledError as e:
        raise ReconcileCancelledError("reconciliation cancelled before it finished") from e
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run_reconcile(config: Config, spec: ProjectSpec, cloud: GoogleCloud) -> ReconcileResult:
    """Blocking wrapper used by the command line."""
    return asyncio.run(reconcile_project(config, spec, cloud))
