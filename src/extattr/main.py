"""Worker entry point for the extension attribute synchronizer.

SECRETLESS ARCHITECTURE:
The worker authenticates to Microsoft Graph with a managed identity only and
refuses to start when credential secrets are present in the environment.

Exit codes:
    0  clean shutdown
    1  configuration, mapping, or runtime failure
    2  security violation (credential secret detected)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import IO

from .config import Config, ConfigurationError
from .mapping_loader import MappingLoadError
from .security import SecretlessViolationError
from .service import OperationsService, build_service

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
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
    """Format logs as one JSON object per line with extra fields flattened."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO, stream: IO[str] | None = None) -> None:
    """Configure structured JSON logging (stdout unless another stream is given)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from SDKs
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("ldap3").setLevel(logging.WARNING)


async def serve(service: OperationsService) -> int:
    """Run the worker loop until SIGTERM/SIGINT.

    Returns:
        Exit code.
    """
    logger = logging.getLogger(__name__)
    reconciler = service.reconciler

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await reconciler.run()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await service.close()

    logger.info("Worker stopped")
    return EXIT_SUCCESS


async def main() -> int:
    """Load configuration, wire the service, and run the worker loop."""
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting extension attribute synchronizer",
        extra={
            "mappings_file": str(config.mappings_file),
            "directory_enabled": config.data_sources.enable_directory,
            "endpoint_management_enabled": config.data_sources.enable_endpoint_management,
            "interval_seconds": config.reconcile_interval_seconds,
        },
    )

    try:
        service = build_service(config, requested_by="worker")
    except MappingLoadError as e:
        logger.error(
            "Failed to load mappings",
            extra={"error": str(e), "mappings_file": str(config.mappings_file)},
        )
        return EXIT_FAILURE
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except Exception as e:
        logger.error(
            "Failed to initialize service",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE

    return await serve(service)


def run() -> None:
    """Entry point for the worker."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
