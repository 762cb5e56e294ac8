"""Group reconciliation: existence, membership and policy attachment.

Each desired group moves through a small state machine:

    UNPROCESSED -> FOUND | CREATED -> MEMBERSHIP_RECONCILED -> POLICY_ATTACHED

or ends in FAILED with the step that failed. A missing group is created
on the spot (the "forge" path) and its prior membership is treated as
empty. Member additions and removals of one group run concurrently and
are all awaited before the policy is attached.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .capability import IdentityCapability, NotFound
from .concurrency import gather_settled
from .models import GroupDescriptor, compute_diff
from .policies import PolicyReconciler

logger = logging.getLogger(__name__)


class GroupState(str, Enum):
    """Lifecycle of one group within a pass."""

    UNPROCESSED = "Unprocessed"
    FOUND = "Found"
    CREATED = "NotFoundCreated"
    MEMBERSHIP_RECONCILED = "MembershipReconciled"
    POLICY_ATTACHED = "PolicyAttached"
    FAILED = "Failed"


class GroupStep(str, Enum):
    """Step at which a group failed."""

    FETCH = "fetch"
    CREATE = "create"
    ATTACH = "attach"


@dataclass
class GroupOutcome:
    """Result of reconciling one group."""

    name: str
    state: GroupState = GroupState.UNPROCESSED
    created: bool = False
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    member_failures: dict[str, str] = field(default_factory=dict)
    policy_arn: str | None = None
    policy_incomplete: bool = False
    failed_step: GroupStep | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return (
            self.state == GroupState.POLICY_ATTACHED
            and not self.member_failures
            and not self.policy_incomplete
        )

    def fail(self, step: GroupStep, error: Exception) -> None:
        self.state = GroupState.FAILED
        self.failed_step = step
        self.error = str(error)


@dataclass
class GroupReport:
    """Outcome of the group stage for one account."""

    outcomes: list[GroupOutcome] = field(default_factory=list)
    unmanaged: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(outcome.success for outcome in self.outcomes)

    @property
    def failures(self) -> dict[str, str]:
        failures: dict[str, str] = {}
        for outcome in self.outcomes:
            if outcome.error is not None:
                failures[outcome.name] = f"{outcome.failed_step.value}: {outcome.error}"
            elif outcome.member_failures:
                failures[outcome.name] = f"membership: {outcome.member_failures}"
            elif outcome.policy_incomplete:
                failures[outcome.name] = "policy not found"
        return failures


class GroupReconciler:
    """Brings desired groups, their members and policies into place."""

    def __init__(self, iam_path: str, policies: PolicyReconciler) -> None:
        self._iam_path = iam_path
        self._policies = policies

    async def add_member(
        self, capability: IdentityCapability, user_name: str, group_name: str
    ) -> None:
        logger.info("Assigning user to group", extra={"user": user_name, "group": group_name})
        await capability.add_user_to_group(user_name, group_name)

    async def remove_member(
        self, capability: IdentityCapability, user_name: str, group_name: str
    ) -> None:
        logger.info("Removing user from group", extra={"user": user_name, "group": group_name})
        await capability.remove_user_from_group(user_name, group_name)

    async def _fetch_or_forge(
        self, group: GroupDescriptor, capability: IdentityCapability, outcome: GroupOutcome
    ) -> list[str] | None:
        """Return current members, creating the group if it does not exist."""
        try:
            members = await capability.get_group_members(group.name)
        except NotFound:
            logger.info("Group not found, creating", extra={"group": group.name})
        except Exception as e:
            logger.error(
                "Failed to fetch group", extra={"group": group.name, "error": str(e)}
            )
            outcome.fail(GroupStep.FETCH, e)
            return None
        else:
            outcome.state = GroupState.FOUND
            return members

        try:
            await capability.create_group(group.name, self._iam_path)
        except Exception as e:
            logger.error("Failed to create group", extra={"group": group.name, "error": str(e)})
            outcome.fail(GroupStep.CREATE, e)
            return None

        outcome.state = GroupState.CREATED
        outcome.created = True
        return []

    async def _reconcile_membership(
        self,
        group: GroupDescriptor,
        current: list[str],
        capability: IdentityCapability,
        outcome: GroupOutcome,
    ) -> None:
        diff = compute_diff(group.users, current)
        to_add = diff.creations()
        to_remove = diff.deletions()
        logger.info(
            "Reconciling group membership",
            extra={
                "group": group.name,
                "current": sorted(current),
                "desired": sorted(group.users),
                "to_add": to_add,
                "to_remove": to_remove,
            },
        )

        outcomes = await gather_settled(
            [
                *(self.add_member(capability, user, group.name) for user in to_add),
                *(self.remove_member(capability, user, group.name) for user in to_remove),
            ]
        )

        for index, (user, result) in enumerate(
            zip([*to_add, *to_remove], outcomes, strict=True)
        ):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to update group membership",
                    extra={"group": group.name, "user": user, "error": str(result)},
                )
                outcome.member_failures[user] = str(result)
            elif index < len(to_add):
                outcome.added.append(user)
            else:
                outcome.removed.append(user)

        outcome.state = GroupState.MEMBERSHIP_RECONCILED

    async def _attach_policy(
        self, group: GroupDescriptor, capability: IdentityCapability, outcome: GroupOutcome
    ) -> None:
        if not group.policy:
            outcome.state = GroupState.POLICY_ATTACHED
            return

        arns = await self._policies.resolve_arns(group.policy, capability)
        if len(arns) != 1:
            logger.warning(
                "Unexpected number of policies for name",
                extra={"group": group.name, "policy": group.policy, "matches": len(arns)},
            )
        if not arns:
            outcome.policy_incomplete = True
            outcome.state = GroupState.MEMBERSHIP_RECONCILED
            return

        policy_arn = arns[0]
        attached = await capability.list_attached_group_policies(group.name)
        if policy_arn not in attached:
            logger.info(
                "Attaching policy to group",
                extra={"group": group.name, "policy": group.policy, "policy_arn": policy_arn},
            )
            await capability.attach_group_policy(group.name, policy_arn)

        outcome.policy_arn = policy_arn
        outcome.state = GroupState.POLICY_ATTACHED

    async def reconcile_group(
        self, group: GroupDescriptor, capability: IdentityCapability
    ) -> GroupOutcome:
        """Run one group through its state machine."""
        outcome = GroupOutcome(name=group.name)

        current = await self._fetch_or_forge(group, capability, outcome)
        if current is None:
            return outcome

        await self._reconcile_membership(group, current, capability, outcome)

        try:
            await self._attach_policy(group, capability, outcome)
        except Exception as e:
            logger.error(
                "Failed to attach group policy",
                extra={"group": group.name, "policy": group.policy, "error": str(e)},
            )
            outcome.fail(GroupStep.ATTACH, e)

        return outcome

    async def apply(
        self, desired: Sequence[GroupDescriptor], capability: IdentityCapability
    ) -> GroupReport:
        """Reconcile every desired group in document order.

        Groups that exist under the managed path but are not desired are
        reported as unmanaged; they are never deleted.

        Raises:
            IdentityServiceError: If the current groups cannot be listed.
        """
        report = GroupReport()

        existing = await capability.list_groups(self._iam_path)
        desired_names = {group.name for group in desired}
        report.unmanaged = sorted(set(existing) - desired_names)
        if report.unmanaged:
            logger.warning(
                "Groups present but not declared",
                extra={"identity": capability.label, "groups": report.unmanaged},
            )

        for group in desired:
            outcome = await self.reconcile_group(group, capability)
            report.outcomes.append(outcome)

        logger.info(
            "Group stage finished",
            extra={
                "groups": len(report.outcomes),
                "created": [o.name for o in report.outcomes if o.created],
                "failed": sorted(report.failures),
            },
        )
        return report
