"""Account orchestration.

Accounts are processed strictly one at a time. The active credential is
the single piece of shared mutable state, so two accounts in flight would
race on whose credentials a call runs under. For each account:

1. Load the desired state (failure skips the account)
2. Look up the account in the registry and assume its role
3. Run the stages Policy -> Group -> User, in that order, under one timeout
4. Revert to the base identity on leaving the credential session, whatever
   happened in step 3
5. Record a per-account result and continue with the next account

Queued notifications are flushed once, after the loop, under the base
identity, even when the loop itself is aborted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .capability import IdentityCapability
from .config import Config
from .credentials import AccountNotRegistered, CredentialContext, ImpersonationError
from .groups import GroupReconciler, GroupReport
from .models import AccountDescriptor, DesiredState
from .notifications import DeliveryResult, NotificationQueue
from .policies import PolicyReconciler, PolicyReport
from .registry import AccountRegistry, RegistryError
from .spec_loader import SpecLoadError
from .users import UserReconciler, UserReport

logger = logging.getLogger(__name__)


class ReconcileStage(str, Enum):
    """Steps of one account's processing, in execution order."""

    LOAD = "load"
    REGISTRY = "registry"
    ASSUME = "assume"
    POLICIES = "policies"
    GROUPS = "groups"
    USERS = "users"


class AccountStatus(str, Enum):
    """Final status of one account."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageError(Exception):
    """A stage could not run at all; the account's remaining stages are aborted."""

    def __init__(self, account: str, stage: ReconcileStage, cause: BaseException) -> None:
        super().__init__(f"{stage.value} stage failed for '{account}': {cause}")
        self.account = account
        self.stage = stage
        self.cause = cause


class DesiredStateSource(Protocol):
    """Provides the desired state for an account."""

    def load(self, account: str) -> DesiredState: ...


@dataclass
class AccountResult:
    """Result of processing one account."""

    account: str
    status: AccountStatus = AccountStatus.SUCCEEDED
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    stage: ReconcileStage | None = None
    error: BaseException | None = None
    policies: PolicyReport | None = None
    groups: GroupReport | None = None
    users: UserReport | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == AccountStatus.SUCCEEDED

    @property
    def entity_failures(self) -> dict[str, dict[str, str]]:
        """Per-entity failures of the stages that ran, keyed by stage."""
        failures: dict[str, dict[str, str]] = {}
        for stage, report in (
            (ReconcileStage.POLICIES, self.policies),
            (ReconcileStage.GROUPS, self.groups),
            (ReconcileStage.USERS, self.users),
        ):
            if report is not None and report.failures:
                failures[stage.value] = dict(report.failures)
        return failures

    def finish(
        self,
        status: AccountStatus,
        stage: ReconcileStage | None = None,
        error: BaseException | None = None,
    ) -> AccountResult:
        self.status = status
        self.stage = stage
        self.error = error
        self.end_time = datetime.now(UTC)
        return self


@dataclass
class RunReport:
    """Result of one run over all accounts."""

    results: list[AccountResult] = field(default_factory=list)
    deliveries: list[DeliveryResult] = field(default_factory=list)

    @property
    def failed_accounts(self) -> list[str]:
        return [r.account for r in self.results if r.status == AccountStatus.FAILED]

    @property
    def skipped_accounts(self) -> list[str]:
        return [r.account for r in self.results if r.status == AccountStatus.SKIPPED]

    @property
    def success(self) -> bool:
        return not self.failed_accounts


class Orchestrator:
    """Drives accounts one at a time through the reconciliation stages."""

    def __init__(
        self,
        config: Config,
        registry: AccountRegistry,
        context: CredentialContext,
        source: DesiredStateSource,
        notifications: NotificationQueue,
    ) -> None:
        self._config = config
        self._registry = registry
        self._context = context
        self._source = source
        self._notifications = notifications

        self._policies = PolicyReconciler(config.iam_path)
        self._groups = GroupReconciler(config.iam_path, self._policies)
        self._users = UserReconciler(config, self._groups, notifications)

        self._shutdown_requested = False

    def shutdown(self) -> None:
        """Stop after the account currently being processed."""
        logger.info("Shutdown requested")
        self._shutdown_requested = True

    async def run(self, accounts: Iterable[str]) -> RunReport:
        """Process every account in order, then flush notifications."""
        report = RunReport()

        try:
            for account in accounts:
                if self._shutdown_requested:
                    logger.warning("Shutdown requested, remaining accounts not processed")
                    break
                result = await self.process_account(account)
                self._log_result(result)
                report.results.append(result)
        finally:
            # Credentials issued so far must reach their owners even if the loop died.
            # Every account is reverted here, so mail goes out as the base identity.
            report.deliveries = await self._notifications.flush_all()

        logger.info(
            "Run finished",
            extra={
                "accounts": len(report.results),
                "failed": report.failed_accounts,
                "skipped": report.skipped_accounts,
                "mails_sent": sum(1 for d in report.deliveries if d.success),
                "mails_failed": sum(1 for d in report.deliveries if not d.success),
            },
        )
        return report

    async def process_account(self, account: str) -> AccountResult:
        """Process one account; never raises except on cancellation."""
        result = AccountResult(account=account)
        logger.info("Processing account", extra={"account": account})

        try:
            desired = self._source.load(account)
        except SpecLoadError as e:
            return result.finish(AccountStatus.SKIPPED, ReconcileStage.LOAD, e)
        except Exception as e:
            logger.exception("Unexpected error loading desired state", extra={"account": account})
            return result.finish(AccountStatus.SKIPPED, ReconcileStage.LOAD, e)

        try:
            descriptor = await self._registry.get(account)
        except RegistryError as e:
            return result.finish(AccountStatus.SKIPPED, ReconcileStage.REGISTRY, e)
        except Exception as e:
            logger.exception("Unexpected error querying registry", extra={"account": account})
            return result.finish(AccountStatus.SKIPPED, ReconcileStage.REGISTRY, e)

        # SECURITY: session() reverts to the base identity on every exit path,
        # so impersonated credentials never carry into the next account
        try:
            async with self._context.session(descriptor) as capability:
                await asyncio.wait_for(
                    self._reconcile(desired, capability, descriptor, result),
                    timeout=self._config.account_timeout_seconds,
                )
        except (AccountNotRegistered, ImpersonationError) as e:
            return result.finish(AccountStatus.SKIPPED, ReconcileStage.ASSUME, e)
        except StageError as e:
            return result.finish(AccountStatus.FAILED, e.stage, e.cause)
        except TimeoutError as e:
            logger.error(
                "Account reconciliation timed out",
                extra={
                    "account": account,
                    "stage": result.stage.value if result.stage else None,
                    "timeout_seconds": self._config.account_timeout_seconds,
                },
            )
            return result.finish(AccountStatus.FAILED, result.stage, e)
        except Exception as e:
            # Stages wrap their own errors, so this comes from assuming the account
            logger.exception("Unexpected error assuming account", extra={"account": account})
            return result.finish(AccountStatus.FAILED, ReconcileStage.ASSUME, e)

        return result.finish(AccountStatus.SUCCEEDED)

    async def _reconcile(
        self,
        desired: DesiredState,
        capability: IdentityCapability,
        account: AccountDescriptor,
        result: AccountResult,
    ) -> None:
        # Each stage lists live state, so it must see the previous stage's mutations
        result.stage = ReconcileStage.POLICIES
        result.policies = await self._run_stage(
            account.name, result.stage, self._policies.apply(desired.policies, capability)
        )

        result.stage = ReconcileStage.GROUPS
        result.groups = await self._run_stage(
            account.name, result.stage, self._groups.apply(desired.groups, capability)
        )

        result.stage = ReconcileStage.USERS
        result.users = await self._run_stage(
            account.name, result.stage, self._users.apply(desired.users, capability, account)
        )

        result.stage = None

    async def _run_stage(self, account: str, stage: ReconcileStage, stage_call: Any) -> Any:
        try:
            return await stage_call
        except Exception as e:
            logger.error(
                "Stage failed, aborting account",
                extra={"account": account, "stage": stage.value, "error": str(e)},
            )
            raise StageError(account, stage, e) from e

    def _log_result(self, result: AccountResult) -> None:
        """Log account result with structured data."""
        extra: dict[str, Any] = {
            "account": result.account,
            "status": result.status.value,
            "duration_seconds": result.duration_seconds,
        }

        if result.policies is not None:
            extra["policies_created"] = len(result.policies.created)
            extra["policies_deleted"] = len(result.policies.deleted)
        if result.groups is not None:
            extra["groups_processed"] = len(result.groups.outcomes)
        if result.users is not None:
            extra["users_created"] = len(result.users.created)
            extra["users_deleted"] = len(result.users.deleted)

        failures = result.entity_failures
        if failures:
            extra["entity_failures"] = failures

        if result.error is not None:
            extra["stage"] = result.stage.value if result.stage else None
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__

        match result.status:
            case AccountStatus.FAILED:
                logger.error("Account reconciliation failed", extra=extra)
            case AccountStatus.SKIPPED:
                logger.warning("Account skipped", extra=extra)
            case _ if failures:
                logger.warning("Account reconciled with entity failures", extra=extra)
            case _:
                logger.info("Account reconciled", extra=extra)
