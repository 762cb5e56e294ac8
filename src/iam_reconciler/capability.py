"""Identity-service capability interface and error taxonomy.

Reconcilers only ever talk to the identity service through an object
satisfying IdentityCapability. The production implementation wraps a
boto3 IAM client (see iam_backend.py); tests use an in-memory fake.

Every primitive either returns a result or raises one of the typed
errors below. Throttling is retried by the backend, so reconcilers only
see Throttled once retries are exhausted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class IdentityServiceError(Exception):
    """Base class for identity-service failures (the "Other" category)."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class NotFound(IdentityServiceError):
    """The referenced entity does not exist."""


class ConflictError(IdentityServiceError):
    """The request conflicts with the entity's current state.

    Raised for example when deleting a user that still has group
    memberships or a policy that is still attached.
    """


class AlreadyExists(ConflictError):
    """An entity with the same name already exists."""


class Throttled(IdentityServiceError):
    """The service rejected the call due to rate limiting."""


class InvalidPolicyDocument(IdentityServiceError):
    """A policy document is missing or rejected by the service."""


@dataclass(frozen=True)
class PolicyInfo:
    """A customer-managed policy as listed by the service."""

    name: str
    arn: str


@dataclass(frozen=True)
class PolicyAttachments:
    """Entities currently holding a policy."""

    groups: tuple[str, ...] = ()
    users: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.groups or self.users or self.roles)


@dataclass(frozen=True)
class AccessKey:
    """Programmatic credential pair. The secret is excluded from repr."""

    user_name: str
    access_key_id: str
    secret_access_key: str = field(default="", repr=False)


class IdentityCapability(Protocol):
    """Primitives exposed by the identity service of one account."""

    label: str

    # Users
    async def list_users(self, path_prefix: str) -> list[str]: ...

    async def create_user(self, user_name: str, path: str) -> None: ...

    async def delete_user(self, user_name: str) -> None: ...

    async def create_login_profile(
        self, user_name: str, password: str, reset_required: bool
    ) -> None: ...

    async def delete_login_profile(self, user_name: str) -> None: ...

    async def create_access_key(self, user_name: str) -> AccessKey: ...

    async def list_access_keys(self, user_name: str) -> list[str]: ...

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None: ...

    # Groups
    async def list_groups(self, path_prefix: str) -> list[str]: ...

    async def get_group_members(self, group_name: str) -> list[str]: ...

    async def create_group(self, group_name: str, path: str) -> None: ...

    async def delete_group(self, group_name: str) -> None: ...

    async def list_groups_for_user(self, user_name: str) -> list[str]: ...

    async def add_user_to_group(self, user_name: str, group_name: str) -> None: ...

    async def remove_user_from_group(self, user_name: str, group_name: str) -> None: ...

    async def attach_group_policy(self, group_name: str, policy_arn: str) -> None: ...

    async def list_attached_group_policies(self, group_name: str) -> list[str]: ...

    # Policies
    async def list_policies(self, path_prefix: str) -> list[PolicyInfo]: ...

    async def create_policy(
        self, policy_name: str, document: dict[str, Any], path: str
    ) -> PolicyInfo: ...

    async def delete_policy(self, policy_arn: str) -> None: ...

    async def list_policy_attachments(self, policy_arn: str) -> PolicyAttachments: ...

    async def detach_group_policy(self, group_name: str, policy_arn: str) -> None: ...

    async def detach_user_policy(self, user_name: str, policy_arn: str) -> None: ...

    async def detach_role_policy(self, role_name: str, policy_arn: str) -> None: ...
