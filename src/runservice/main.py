"""One-shot entry point for a reconciliation pass.

Reads its settings from the environment (see ReconcilerConfig.from_env),
loads SPEC_FILE, imports the backend named by BACKEND and runs a single
pass against the state file. SIGTERM/SIGINT stop new node applications;
calls already in flight are allowed to finish.

Exit codes:
    0: pass succeeded
    1: invalid spec or configuration, or some node did not succeed
    2: fatal graph fault or state store failure
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .backend import BackendLoadError, BackendOperationError, load_backend
from .config import ConfigurationError, ReconcilerConfig
from .dependency import GraphConsistencyFault
from .preconditions import ValidationError
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_spec
from .state import StateStore, StateStoreError

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_FIELDS = frozenset(
    {
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
    }
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
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure root logging, JSON for production or plain text for terminals."""
    handler = logging.StreamHandler(sys.stdout if log_format == "json" else sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def main() -> int:
    """Run one reconciliation pass.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = ReconcilerConfig.from_env()
        if config.spec_file is None or config.backend is None:
            raise ConfigurationError("SPEC_FILE and BACKEND must both be set")
        spec = load_spec(config.spec_file)
        backend = load_backend(config.backend)
    except (ConfigurationError, SpecLoadError, BackendLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1
    except ValidationError as e:
        logger.error(
            "Spec validation failed",
            extra={"source": e.source, "violations": [str(v) for v in e.violations]},
        )
        return 1

    logger.info(
        "Starting reconciliation",
        extra={
            "service": spec.name,
            "project_id": spec.project_id,
            "location": spec.location,
            "dry_run": config.dry_run,
            "state_file": str(config.state_file),
        },
    )

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal, cancelling pass", extra={"signal": sig.name})
        cancel_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    reconciler = Reconciler(backend, config)
    try:
        result = await reconciler.reconcile(
            spec, StateStore(config.state_file), cancel_event=cancel_event
        )
    except ValidationError as e:
        logger.error(
            "Precondition failed",
            extra={"source": e.source, "violations": [str(v) for v in e.violations]},
        )
        return 1
    except BackendOperationError as e:
        logger.error("Failed to observe current state", extra={"key": e.key, "error": e.message})
        return 1
    except (GraphConsistencyFault, StateStoreError) as e:
        logger.critical("Fatal reconciliation fault", extra={"error": str(e)})
        return 2

    if not result.success:
        logger.error("Pass did not converge", extra={"retry_keys": result.retry_keys})
        return 1

    if result.outputs is not None:
        logger.info("Service outputs", extra=result.outputs.to_dict())
    return 0


def run() -> None:
    """Entry point for the one-shot runner."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
