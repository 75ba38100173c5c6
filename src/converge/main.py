"""Process entry point: logging setup and one reconciliation run.

EXIT CODES:
- 0: every action succeeded (or a plan was produced)
- 1: configuration or planning error, or a partially failed apply
- 2: the state lock is held by another run

Logs are JSON lines on stderr; stdout is reserved for the JSON report.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .azure_provider import AzureProvider, CredentialPolicyError
from .config import ConfigurationError, EngineConfig
from .graph import DependencyCycle
from .loader import ConfigurationLoadError, load_configuration
from .models import Resource, SchemaViolation
from .provider import Provider, ProviderError
from .reconciler import Reconciler
from .state import StateError, StateLocked, StateStore, create_backend

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2

# LogRecord attributes that are not user-supplied extras
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
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
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


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_store(config: EngineConfig) -> StateStore:
    return StateStore(create_backend(config), lock_timeout_seconds=config.lock_timeout_seconds)


def build_provider(config: EngineConfig) -> Provider:
    return AzureProvider.from_config(config)


async def run_reconciler(
    reconciler: Reconciler, desired: list[Resource], *, dry_run: bool
) -> dict[str, Any]:
    """Run one cycle, cancelling remaining waves on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or no signal support on this platform
            pass

    try:
        result = await reconciler.reconcile(desired, dry_run=dry_run)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return result.to_dict() | {"exit_code": result.exit_code}


def reconcile(
    path: Path | None,
    *,
    dry_run: bool,
    config: EngineConfig | None = None,
    provider: Provider | None = None,
) -> tuple[int, dict[str, Any]]:
    """Load declarations and run one cycle.

    A ``path`` of None declares nothing, so every recorded resource is destroyed.

    Returns:
        (exit code, JSON-serialisable report)
    """
    try:
        config = config or EngineConfig.from_env()
        provider = provider or build_provider(config)
        desired = load_configuration(path, provider.schemas) if path is not None else []
        reconciler = Reconciler(provider, build_store(config), config)
        report = asyncio.run(run_reconciler(reconciler, desired, dry_run=dry_run))
    except StateLocked as e:
        logger.error("State is locked", extra={"error": str(e)})
        holder = e.holder.model_dump(mode="json") if e.holder is not None else None
        return EXIT_LOCKED, {"success": False, "error": str(e), "lock": holder}
    except CredentialPolicyError as e:
        logger.critical("Security violation: credentials detected in environment")
        return EXIT_FAILURE, {"success": False, "error": str(e)}
    except (
        ConfigurationError,
        ConfigurationLoadError,
        SchemaViolation,
        DependencyCycle,
        StateError,
        ProviderError,
    ) as e:
        logger.error(
            "Reconciliation aborted",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE, {"success": False, "error": str(e), "error_type": type(e).__name__}

    return report["exit_code"], report
