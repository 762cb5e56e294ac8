"""User reconciliation: creation with credential material, and deletion.

Users whose name ends in ``_keys`` are programmatic identities and get an
access key pair; every other user gets a console login profile with a
random password that must be changed on first sign-in. Each new
credential is announced through exactly one queued mail job.

Deleting a user is ordered: group memberships are removed first (the
service refuses to delete a user that still belongs to a group), then
the access method is revoked, then the identity itself is deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Set
from dataclasses import dataclass, field

from .capability import IdentityCapability, NotFound
from .concurrency import first_error, gather_settled
from .config import KEYS_USER_SUFFIX, Config
from .groups import GroupReconciler
from .models import AccountDescriptor, compute_diff
from .notifications import MailJob, NotificationQueue, access_key_mail, login_profile_mail
from .security import generate_password, log_security_audit_event, mask_secret

logger = logging.getLogger(__name__)


def is_keys_user(user_name: str) -> bool:
    """Check whether a user is a programmatic (access key) identity."""
    return user_name.endswith(KEYS_USER_SUFFIX)


@dataclass
class UserReport:
    """Outcome of the user stage for one account."""

    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    notifications_skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class UserReconciler:
    """Creates and deletes users so the account matches the desired set."""

    def __init__(
        self,
        config: Config,
        groups: GroupReconciler,
        notifications: NotificationQueue,
    ) -> None:
        self._config = config
        self._groups = groups
        self._notifications = notifications

    def login_recipient(self, user_name: str, account: AccountDescriptor) -> str | None:
        """Recipient for a new console password."""
        if self._config.email_domain:
            return f"{user_name}@{self._config.email_domain}"
        return account.project_mail

    @property
    def operator_copy(self) -> tuple[str, ...]:
        """Addresses copied on every credential mail."""
        return (self._config.mail_sender,) if self._config.copy_operator else ()

    def keys_recipient(self, account: AccountDescriptor) -> str | None:
        """Recipient for a new access key pair."""
        if account.project_mail:
            return account.project_mail
        if self._config.is_root_account(account.name):
            return self._config.mail_sender
        return None

    async def _issue_login_profile(
        self, user_name: str, capability: IdentityCapability, account: AccountDescriptor
    ) -> MailJob | None:
        password = generate_password()
        await capability.create_login_profile(user_name, password, reset_required=True)
        log_security_audit_event(
            "credential_issued",
            account=account.name,
            target_identity=user_name,
            action="create_login_profile",
            result="success",
        )

        recipient = self.login_recipient(user_name, account)
        if recipient is None:
            return None
        return login_profile_mail(
            recipient, account.name, user_name, password, cc=self.operator_copy
        )

    async def _issue_access_key(
        self, user_name: str, capability: IdentityCapability, account: AccountDescriptor
    ) -> MailJob | None:
        key = await capability.create_access_key(user_name)
        log_security_audit_event(
            "credential_issued",
            account=account.name,
            target_identity=user_name,
            action=f"create_access_key:{mask_secret(key.access_key_id)}",
            result="success",
        )

        recipient = self.keys_recipient(account)
        if recipient is None:
            return None
        return access_key_mail(
            recipient,
            account.name,
            user_name,
            key.access_key_id,
            key.secret_access_key,
            cc=self.operator_copy,
        )

    async def create_user(
        self, user_name: str, capability: IdentityCapability, account: AccountDescriptor
    ) -> bool:
        """Create a user with its credential and queue the notification.

        Returns:
            True if a notification was queued, False if no recipient resolved.
        """
        logger.info(
            "Creating new user",
            extra={"user": user_name, "account": account.name, "keys": is_keys_user(user_name)},
        )
        await capability.create_user(user_name, self._config.iam_path)

        if is_keys_user(user_name):
            job = await self._issue_access_key(user_name, capability, account)
        else:
            job = await self._issue_login_profile(user_name, capability, account)

        if job is None:
            logger.warning(
                "No recipient for credential notification, skipping mail",
                extra={"user": user_name, "account": account.name},
            )
            return False

        self._notifications.enqueue(job)
        return True

    async def revoke_access(self, user_name: str, capability: IdentityCapability) -> None:
        """Remove the user's access method (access keys or login profile)."""
        if is_keys_user(user_name):
            key_ids = await capability.list_access_keys(user_name)
            outcomes = await gather_settled(
                capability.delete_access_key(user_name, key_id) for key_id in key_ids
            )
            error = first_error(outcomes)
            if error is not None:
                raise error
            logger.info(
                "Access keys deleted",
                extra={"user": user_name, "keys": [mask_secret(k) for k in key_ids]},
            )
            return

        try:
            await capability.delete_login_profile(user_name)
        except NotFound:
            logger.info("User has no login profile", extra={"user": user_name})

    async def delete_user(self, user_name: str, capability: IdentityCapability) -> None:
        """Detach the user from all groups, revoke access, then delete it."""
        logger.info("Deleting old user", extra={"user": user_name})

        group_names = await capability.list_groups_for_user(user_name)
        outcomes = await gather_settled(
            self._groups.remove_member(capability, user_name, group_name)
            for group_name in group_names
        )
        for group_name, outcome in zip(group_names, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.error(
                    "Failed to remove user from group",
                    extra={"user": user_name, "group": group_name, "error": str(outcome)},
                )

        await self.revoke_access(user_name, capability)
        await capability.delete_user(user_name)

    async def apply(
        self,
        desired: Set[str],
        capability: IdentityCapability,
        account: AccountDescriptor,
    ) -> UserReport:
        """Create missing users and delete undeclared ones.

        Each user is handled independently; one failure does not stop the
        others.

        Raises:
            IdentityServiceError: If the current users cannot be listed.
        """
        report = UserReport()

        observed = await capability.list_users(self._config.iam_path)
        diff = compute_diff(desired, observed)
        to_create = diff.creations()
        to_delete = diff.deletions()
        logger.info(
            "Updating users",
            extra={
                "identity": capability.label,
                "account": account.name,
                "to_create": to_create,
                "to_delete": to_delete,
            },
        )

        creations = await gather_settled(
            self.create_user(name, capability, account) for name in to_create
        )
        for name, outcome in zip(to_create, creations, strict=True):
            if isinstance(outcome, Exception):
                logger.error("Failed to create user", extra={"user": name, "error": str(outcome)})
                report.failures[name] = f"create: {outcome}"
                continue
            report.created.append(name)
            if not outcome:
                report.notifications_skipped.append(name)

        deletions = await gather_settled(self.delete_user(name, capability) for name in to_delete)
        for name, outcome in zip(to_delete, deletions, strict=True):
            if isinstance(outcome, Exception):
                logger.error("Failed to delete user", extra={"user": name, "error": str(outcome)})
                report.failures[name] = f"delete: {outcome}"
            else:
                report.deleted.append(name)

        logger.info(
            "User stage finished",
            extra={
                "created": report.created,
                "deleted": report.deleted,
                "failed": sorted(report.failures),
                "notifications_skipped": report.notifications_skipped,
            },
        )
        return report
