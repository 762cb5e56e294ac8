"""Configuration management with validation.

All options are read from the environment once at startup and validated
at construction time, so a misconfigured run fails before any account
is touched.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_IAM_PATH = "/"
DEFAULT_ROOT_ACCOUNT_NAME = "root"
DEFAULT_REGISTRY_TABLE = "aim_roles"

DEFAULT_SESSION_DURATION_SECONDS = 3600
MIN_SESSION_DURATION_SECONDS = 900  # STS lower bound
MAX_SESSION_DURATION_SECONDS = 43200  # STS upper bound

DEFAULT_ACCOUNT_TIMEOUT_SECONDS = 600
MIN_ACCOUNT_TIMEOUT_SECONDS = 60
MAX_ACCOUNT_TIMEOUT_SECONDS = 3600

MAX_API_RETRIES = 5
RETRY_BACKOFF_BASE_SECONDS = 1

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB per desired-state document

# Users with this suffix get programmatic access keys instead of a password
KEYS_USER_SUFFIX = "_keys"

# Input validation patterns
VALID_IAM_PATH_PATTERN = r"^(/|/[\x21-\x7e]{1,510}/)$"
VALID_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
VALID_DOMAIN_PATTERN = r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$"


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    mail_sender: str

    # Identity layout
    iam_path: str = DEFAULT_IAM_PATH
    root_account_name: str = DEFAULT_ROOT_ACCOUNT_NAME

    # Notifications
    email_domain: str | None = None
    # Send a copy of every credential mail to MAIL_SENDER
    copy_operator: bool = True

    # Desired-state documents (synced by git-sync sidecar)
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))

    # AWS
    registry_table: str = DEFAULT_REGISTRY_TABLE
    aws_region: str | None = None
    session_duration_seconds: int = DEFAULT_SESSION_DURATION_SECONDS

    # Run control
    account_timeout_seconds: int = DEFAULT_ACCOUNT_TIMEOUT_SECONDS
    accounts: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.mail_sender:
            errors.append("MAIL_SENDER is required")
        elif not re.match(VALID_EMAIL_PATTERN, self.mail_sender):
            errors.append(f"MAIL_SENDER must be an email address: {self.mail_sender}")

        if not re.match(VALID_IAM_PATH_PATTERN, self.iam_path):
            errors.append(f"IAM_PATH must start and end with '/': {self.iam_path}")

        if not self.root_account_name:
            errors.append("ROOT_ACCOUNT_NAME cannot be empty")

        if self.email_domain is not None and not re.match(
            VALID_DOMAIN_PATTERN, self.email_domain.lower()
        ):
            errors.append(f"EMAIL_DOMAIN must be a DNS domain: {self.email_domain}")

        if not self.registry_table:
            errors.append("REGISTRY_TABLE cannot be empty")

        if not (
            MIN_SESSION_DURATION_SECONDS
            <= self.session_duration_seconds
            <= MAX_SESSION_DURATION_SECONDS
        ):
            errors.append(
                f"ASSUME_ROLE_DURATION must be between {MIN_SESSION_DURATION_SECONDS} "
                f"and {MAX_SESSION_DURATION_SECONDS} seconds"
            )

        if not (
            MIN_ACCOUNT_TIMEOUT_SECONDS
            <= self.account_timeout_seconds
            <= MAX_ACCOUNT_TIMEOUT_SECONDS
        ):
            errors.append(
                f"ACCOUNT_TIMEOUT must be between {MIN_ACCOUNT_TIMEOUT_SECONDS} "
                f"and {MAX_ACCOUNT_TIMEOUT_SECONDS} seconds"
            )

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def is_root_account(self, account_name: str) -> bool:
        """Check whether an account name designates the base account."""
        return account_name == self.root_account_name

    @classmethod
    def from_env(cls, specs_dir: Path | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            specs_dir: Overrides SPECS_DIR; applied before validation.

        Environment Variables:
            MAIL_SENDER: Operator address used as mail source (required)
            IAM_PATH: Path prefix for created users, groups and policies (default: /)
            ROOT_ACCOUNT_NAME: Account processed without impersonation (default: root)
            EMAIL_DOMAIN: Domain for deriving per-user recipient addresses
            MAIL_COPY_OPERATOR: Copy credential mail to MAIL_SENDER (default: true)
            SPECS_DIR: Directory with one sub-directory per account (default: /specs)
            REGISTRY_TABLE: DynamoDB table with account roles (default: aim_roles)
            AWS_REGION: Region for STS, DynamoDB and SES clients
            ASSUME_ROLE_DURATION: Assumed session lifetime in seconds (default: 3600)
            ACCOUNT_TIMEOUT: Upper bound for one account's reconciliation (default: 600)
            ACCOUNTS: Comma-separated account names (default: all in SPECS_DIR)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_list(key: str) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            mail_sender=os.environ.get("MAIL_SENDER", ""),
            iam_path=os.environ.get("IAM_PATH", DEFAULT_IAM_PATH),
            root_account_name=os.environ.get("ROOT_ACCOUNT_NAME", DEFAULT_ROOT_ACCOUNT_NAME),
            email_domain=os.environ.get("EMAIL_DOMAIN") or None,
            copy_operator=get_bool("MAIL_COPY_OPERATOR", True),
            specs_dir=specs_dir or Path(os.environ.get("SPECS_DIR", "/specs")),
            registry_table=os.environ.get("REGISTRY_TABLE", DEFAULT_REGISTRY_TABLE),
            aws_region=os.environ.get("AWS_REGION") or None,
            session_duration_seconds=get_int(
                "ASSUME_ROLE_DURATION", DEFAULT_SESSION_DURATION_SECONDS
            ),
            account_timeout_seconds=get_int("ACCOUNT_TIMEOUT", DEFAULT_ACCOUNT_TIMEOUT_SECONDS),
            accounts=get_list("ACCOUNTS"),
        )
