"""Main entry point for the Azure Resource Convergence Operator.

SECRETLESS ARCHITECTURE:
This operator enforces a secretless security model where:
- ALL authentication uses Managed Identities
- NO service principal secrets or passwords are allowed
- Credentials are NEVER stored - Entra ID tokens are ephemeral

The operator loads resource specs, builds one manager per resource kind,
and runs the reconcile runner until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .config import Config, ConfigurationError
from .dependency import CyclicDependencyError, DependencyResolver
from .errors import RetryPolicy
from .managers.registry import build_registry
from .operations import OperationTracker
from .reconciler import ConvergenceController
from .runner import ReconcileRunner
from .security import ManagedIdentityCredentialProvider, SecretlessViolationError
from .spec_loader import SpecLoadError, load_instances
from .store import InstanceStore

# LogRecord attributes that are not structured fields
_STANDARD_RECORD_ATTRIBUTES = frozenset(
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


def setup_logging() -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRIBUTES:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_runner(config: Config) -> ReconcileRunner:
    """Wire credential, managers, store, controller and runner from config.

    Raises:
        SecretlessViolationError: If credentials are present in the environment.
        SpecLoadError: If the resource specs cannot be loaded.
        CyclicDependencyError: If the specs declare a dependency cycle.
    """
    credential = ManagedIdentityCredentialProvider(config.client_id).get_credential()
    tracker = OperationTracker.from_config(config)
    registry = build_registry(config, credential, tracker)

    store = InstanceStore(
        load_instances(config.specs_dir, subscription_id=config.subscription_id)
    )
    controller = ConvergenceController(
        registry,
        DependencyResolver(store),
        store.commit_status,
        subscription_id=config.subscription_id,
        policy=RetryPolicy.from_config(config),
    )
    return ReconcileRunner(
        controller,
        store,
        workers=config.max_concurrent_reconciles,
        resync_interval=config.resync_interval_seconds,
        pass_timeout=config.pass_timeout_seconds,
        loader=lambda: load_instances(config.specs_dir, subscription_id=config.subscription_id),
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, 1 for configuration or runtime failure,
        2 for a security violation).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Azure Resource Convergence Operator",
        extra={
            "subscription_id": config.subscription_id,
            "endpoint": config.resource_manager_endpoint,
            "specs_dir": str(config.specs_dir),
            "workers": config.max_concurrent_reconciles,
        },
    )

    try:
        runner = build_runner(config)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except (SpecLoadError, CyclicDependencyError) as e:
        logger.error(
            "Resource spec loading failed",
            extra={"error": str(e), "specs_dir": str(config.specs_dir)},
        )
        return 1
    except Exception as e:
        logger.error(
            "Failed to initialize operator",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await runner.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
