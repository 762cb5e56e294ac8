"""Per-account credential context.

The reconciler runs under a long-lived base identity. For every target
account except the base account it exchanges the account's trust role
for short-lived credentials (STS AssumeRole) and hands the resulting
capability to the reconcilers.

SECURITY INVARIANTS:
1. The base identity is never replaced, only shadowed while an account
   is assumed. Temporary credentials live in their own boto3 Session.
2. At most one account is assumed at a time. Assuming a second account
   before reverting the first raises CredentialLeakError.
3. revert() restores the base identity and is idempotent; session()
   guarantees it runs whatever happens inside the block.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .capability import IdentityCapability
from .config import DEFAULT_SESSION_DURATION_SECONDS
from .iam_backend import Boto3IdentityCapability
from .models import AccountDescriptor
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

ROLE_SESSION_NAME_PREFIX = "iam-reconciler"
MAX_ROLE_SESSION_NAME_LENGTH = 64


class AccountNotRegistered(Exception):
    """The account has no trust role and is not the base account."""

    def __init__(self, account_name: str) -> None:
        super().__init__(
            f"Account '{account_name}' has no registered role and is not the base account"
        )
        self.account_name = account_name


class ImpersonationError(Exception):
    """The trust-role exchange failed."""

    pass


class CredentialLeakError(RuntimeError):
    """An account was assumed while another account's credentials were active."""

    pass


class Impersonator(Protocol):
    """Exchanges an account's trust role for a scoped capability."""

    async def impersonate(self, account: AccountDescriptor) -> IdentityCapability: ...


def role_session_name(account_name: str) -> str:
    """Build a valid STS RoleSessionName for an account."""
    safe_name = re.sub(r"[^\w+=,.@-]", "-", account_name)
    return f"{ROLE_SESSION_NAME_PREFIX}-{safe_name}"[:MAX_ROLE_SESSION_NAME_LENGTH]


class StsImpersonator:
    """Impersonator using STS AssumeRole from the base boto3 session."""

    def __init__(
        self,
        session: Any,
        *,
        duration_seconds: int = DEFAULT_SESSION_DURATION_SECONDS,
        region_name: str | None = None,
    ) -> None:
        """Initialize impersonator.

        Args:
            session: Base boto3 Session holding the long-lived identity.
            duration_seconds: Lifetime of assumed sessions.
            region_name: Region for clients built on assumed sessions.
        """
        self._session = session
        self._duration_seconds = duration_seconds
        self._region_name = region_name

    async def impersonate(self, account: AccountDescriptor) -> IdentityCapability:
        if not account.role_arn:
            raise ImpersonationError(f"Account '{account.name}' has no role to assume")

        sts = self._session.client("sts", region_name=self._region_name)
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                functools.partial(
                    sts.assume_role,
                    RoleArn=account.role_arn,
                    RoleSessionName=role_session_name(account.name),
                    DurationSeconds=self._duration_seconds,
                ),
            )
        except (ClientError, BotoCoreError) as e:
            raise ImpersonationError(
                f"Failed to assume role {account.role_arn} for '{account.name}': {e}"
            ) from e

        credentials = response["Credentials"]
        assumed_session = boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self._region_name,
        )
        return Boto3IdentityCapability(
            assumed_session.client("iam"),
            label=f"assumed:{account.name}",
        )


class CredentialContext:
    """Tracks which identity is active and restores the base identity.

    Owned by the orchestrator; reconcilers only ever receive the capability
    returned by assume() and never keep it beyond one call.
    """

    def __init__(
        self,
        base_identity: IdentityCapability,
        impersonator: Impersonator,
        root_account_name: str,
    ) -> None:
        self._base_identity = base_identity
        self._active = base_identity
        self._assumed_account: str | None = None
        self._impersonator = impersonator
        self._root_account_name = root_account_name

    @property
    def base_identity(self) -> IdentityCapability:
        return self._base_identity

    @property
    def active(self) -> IdentityCapability:
        return self._active

    @property
    def assumed_account(self) -> str | None:
        """Account currently being processed, or None when idle."""
        return self._assumed_account

    @property
    def is_impersonating(self) -> bool:
        return self._active is not self._base_identity

    async def assume(self, account: AccountDescriptor) -> IdentityCapability:
        """Activate the capability for one account.

        Raises:
            CredentialLeakError: If another account is still assumed.
            AccountNotRegistered: If the account has no role and is not the base.
            ImpersonationError: If the role exchange fails.
        """
        if self._assumed_account is not None:
            raise CredentialLeakError(
                f"Cannot assume '{account.name}' while '{self._assumed_account}' is active"
            )

        if account.role_arn:
            logger.info(
                "Assuming account role",
                extra={"account": account.name, "role_arn": account.role_arn},
            )
            capability = await self._impersonator.impersonate(account)
            self._active = capability
            self._assumed_account = account.name
            log_security_audit_event(
                "role_assumed",
                account=account.name,
                target_identity=account.role_arn,
                action="assume_role",
                result="success",
            )
            return capability

        if account.name == self._root_account_name:
            logger.info("Using base identity for root account", extra={"account": account.name})
            self._assumed_account = account.name
            return self._base_identity

        logger.warning(
            "Account not registered, skipping",
            extra={"account": account.name},
        )
        raise AccountNotRegistered(account.name)

    def revert(self) -> None:
        """Restore the base identity. Safe to call more than once."""
        if self._assumed_account is None and not self.is_impersonating:
            return

        logger.info(
            "Reverting to base identity",
            extra={
                "account": self._assumed_account,
                "was_impersonating": self.is_impersonating,
            },
        )
        self._active = self._base_identity
        self._assumed_account = None

    @asynccontextmanager
    async def session(self, account: AccountDescriptor) -> AsyncIterator[IdentityCapability]:
        """Assume an account for the duration of the block, then revert."""
        capability = await self.assume(account)
        try:
            yield capability
        finally:
            self.revert()
