"""Main entry point for the IAM reconciler.

One invocation processes every configured account once and exits. The
base identity comes from the standard boto3 credential chain; target
accounts are reached through their registered trust roles.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime

import boto3

from .config import Config, ConfigurationError
from .credentials import CredentialContext, StsImpersonator
from .iam_backend import Boto3IdentityCapability
from .notifications import NotificationQueue, SesMailTransport
from .orchestrator import Orchestrator, RunReport
from .registry import AccountRegistry
from .spec_loader import DirectoryStateSource, SpecLoadError

# LogRecord attributes that are not structured extras
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
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_orchestrator(config: Config, session: boto3.Session | None = None) -> Orchestrator:
    """Wire the orchestrator to AWS clients created from the base session."""
    session = session or boto3.Session(region_name=config.aws_region)

    base_identity = Boto3IdentityCapability(session.client("iam"), label="base")
    impersonator = StsImpersonator(
        session,
        duration_seconds=config.session_duration_seconds,
        region_name=config.aws_region,
    )
    context = CredentialContext(base_identity, impersonator, config.root_account_name)
    registry = AccountRegistry(session.client("dynamodb"), config.registry_table)
    notifications = NotificationQueue(SesMailTransport(session.client("ses"), config.mail_sender))

    return Orchestrator(
        config=config,
        registry=registry,
        context=context,
        source=DirectoryStateSource(config.specs_dir),
        notifications=notifications,
    )


def resolve_accounts(config: Config, source: DirectoryStateSource) -> list[str]:
    """Accounts to process: the configured list, or every account directory."""
    if config.accounts:
        return list(config.accounts)
    return source.list_accounts()


async def run_once(config: Config, accounts: Sequence[str] | None = None) -> RunReport:
    """Run one reconciliation pass with signal-driven graceful shutdown."""
    orchestrator = build_orchestrator(config)
    if accounts is None:
        accounts = resolve_accounts(config, DirectoryStateSource(config.specs_dir))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, orchestrator.shutdown)

    try:
        return await orchestrator.run(accounts)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


async def main() -> int:
    """Run the reconciler.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting IAM reconciler",
        extra={
            "iam_path": config.iam_path,
            "root_account": config.root_account_name,
            "specs_dir": str(config.specs_dir),
            "accounts": list(config.accounts),
        },
    )

    try:
        report = await run_once(config)
    except SpecLoadError as e:
        logger.error("Failed to list accounts", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    return 0 if report.success else 1


def run() -> None:
    """Entry point for the reconciler process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
