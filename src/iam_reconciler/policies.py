"""Policy reconciliation by full replacement.

Customer-managed policy documents are immutable once created and only a
handful of versions may exist per policy, so policies are not diffed by
content. Every pass removes all policies under the managed path and then
creates the desired ones from scratch:

1. List current policies
2. For each policy: detach it from every group, user and role, then delete it
3. After every deletion has resolved, create each desired policy

Groups lose their attachment between steps 2 and 3; the group stage
re-attaches by name afterwards. A policy cannot be deleted while it is
attached, so a policy whose detach failed is not deleted.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field

from .capability import IdentityCapability, InvalidPolicyDocument, PolicyInfo
from .concurrency import first_error, gather_settled
from .models import PolicyDescriptor

logger = logging.getLogger(__name__)


@dataclass
class PolicyReport:
    """Outcome of the policy stage for one account."""

    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failures


class PolicyReconciler:
    """Replaces all managed policies with the desired set."""

    def __init__(self, iam_path: str) -> None:
        self._iam_path = iam_path

    async def resolve_arns(self, policy_name: str, capability: IdentityCapability) -> list[str]:
        """Resolve a policy name to the ARNs currently carrying that name.

        Always reads the live listing: policies are recreated on every pass,
        so any remembered ARN would be stale.
        """
        policies = await capability.list_policies(self._iam_path)
        return [policy.arn for policy in policies if policy.name == policy_name]

    async def detach_all(self, policy_arn: str, capability: IdentityCapability) -> None:
        """Detach a policy from every entity holding it.

        Raises:
            IdentityServiceError: The first detach failure, after all detach
                calls have resolved.
        """
        attachments = await capability.list_policy_attachments(policy_arn)
        if attachments.is_empty:
            return

        detaches: list[Awaitable[None]] = [
            *(capability.detach_group_policy(name, policy_arn) for name in attachments.groups),
            *(capability.detach_user_policy(name, policy_arn) for name in attachments.users),
            *(capability.detach_role_policy(name, policy_arn) for name in attachments.roles),
        ]
        outcomes = await gather_settled(detaches)

        logger.info(
            "Policy detached from entities",
            extra={
                "policy_arn": policy_arn,
                "groups": list(attachments.groups),
                "users": list(attachments.users),
                "roles": list(attachments.roles),
            },
        )

        error = first_error(outcomes)
        if error is not None:
            raise error

    async def _remove(self, policy: PolicyInfo, capability: IdentityCapability) -> None:
        logger.info("Deleting old policy", extra={"policy": policy.name, "policy_arn": policy.arn})
        await self.detach_all(policy.arn, capability)
        await capability.delete_policy(policy.arn)

    async def _create(
        self, descriptor: PolicyDescriptor, capability: IdentityCapability
    ) -> PolicyInfo:
        if descriptor.document is None:
            raise InvalidPolicyDocument(f"Policy '{descriptor.name}' has no document")

        logger.info("Creating policy", extra={"policy": descriptor.name})
        return await capability.create_policy(descriptor.name, descriptor.document, self._iam_path)

    async def apply(
        self, desired: Sequence[PolicyDescriptor], capability: IdentityCapability
    ) -> PolicyReport:
        """Remove every managed policy, then create the desired ones.

        Failures are isolated per policy and collected in the report.

        Raises:
            IdentityServiceError: If the current policies cannot be listed.
        """
        report = PolicyReport()

        existing = await capability.list_policies(self._iam_path)
        logger.info(
            "Replacing policies",
            extra={
                "identity": capability.label,
                "existing": [policy.name for policy in existing],
                "desired": [descriptor.name for descriptor in desired],
            },
        )

        removals = await gather_settled(self._remove(policy, capability) for policy in existing)
        for policy, outcome in zip(existing, removals, strict=True):
            if isinstance(outcome, Exception):
                logger.error(
                    "Failed to delete policy",
                    extra={"policy": policy.name, "policy_arn": policy.arn, "error": str(outcome)},
                )
                report.failures[policy.name] = f"delete: {outcome}"
            else:
                report.deleted.append(policy.name)

        creations = await gather_settled(self._create(d, capability) for d in desired)
        for descriptor, outcome in zip(desired, creations, strict=True):
            if isinstance(outcome, InvalidPolicyDocument):
                logger.error(
                    "Invalid policy document, skipping",
                    extra={"policy": descriptor.name, "error": str(outcome)},
                )
                report.failures[descriptor.name] = f"invalid document: {outcome}"
            elif isinstance(outcome, Exception):
                logger.error(
                    "Failed to create policy",
                    extra={"policy": descriptor.name, "error": str(outcome)},
                )
                report.failures[descriptor.name] = f"create: {outcome}"
            else:
                report.created.append(descriptor.name)

        logger.info(
            "Policy stage finished",
            extra={
                "created": report.created,
                "deleted": report.deleted,
                "failed": sorted(report.failures),
            },
        )
        return report
