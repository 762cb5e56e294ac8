"""Pydantic models for desired-state documents and reconciliation values.

These models provide:
1. Type-safe YAML parsing of users.yml, groups.yml and policies.yml
2. Validation at the boundary (fail fast, fail loudly)
3. The name-based diff shared by every reconciler
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# IAM names: alphanumerics plus +=,.@_-
IAM_NAME_PATTERN = r"^[\w+=,.@-]+$"

IamName = Annotated[str, Field(min_length=1, max_length=128, pattern=IAM_NAME_PATTERN)]


# =============================================================================
# Desired-state documents
# =============================================================================


class PolicyDescriptor(BaseModel):
    """A desired customer-managed policy.

    A missing document is accepted here; the policy stage reports it as an
    InvalidPolicyDocument and skips only that policy.
    """

    model_config = {"extra": "ignore", "frozen": True}

    name: IamName
    document: dict[str, Any] | None = None


class GroupDescriptor(BaseModel):
    """A desired group with its members and attached policy."""

    model_config = {"extra": "ignore", "frozen": True}

    name: IamName
    users: frozenset[str] = Field(default_factory=frozenset)
    policy: str | None = None

    @field_validator("users", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v if v is not None else []


class UsersDocument(BaseModel):
    """Schema of users.yml."""

    model_config = {"extra": "ignore"}

    users: list[IamName] = Field(default_factory=list)

    @field_validator("users", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v if v is not None else []


class GroupsDocument(BaseModel):
    """Schema of groups.yml."""

    model_config = {"extra": "ignore"}

    groups: list[GroupDescriptor] = Field(default_factory=list)

    @field_validator("groups", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v if v is not None else []

    @field_validator("groups")
    @classmethod
    def unique_names(cls, v: list[GroupDescriptor]) -> list[GroupDescriptor]:
        names = [group.name for group in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate group names: {duplicates}")
        return v


class PoliciesDocument(BaseModel):
    """Schema of policies.yml."""

    model_config = {"extra": "ignore"}

    policies: list[PolicyDescriptor] = Field(default_factory=list)

    @field_validator("policies", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return v if v is not None else []

    @field_validator("policies")
    @classmethod
    def unique_names(cls, v: list[PolicyDescriptor]) -> list[PolicyDescriptor]:
        names = [policy.name for policy in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate policy names: {duplicates}")
        return v


class DesiredState(BaseModel):
    """Complete desired state for one account, immutable for one pass."""

    model_config = {"frozen": True}

    users: frozenset[str] = Field(default_factory=frozenset)
    groups: tuple[GroupDescriptor, ...] = ()
    policies: tuple[PolicyDescriptor, ...] = ()

    @classmethod
    def from_documents(
        cls,
        users: UsersDocument,
        groups: GroupsDocument,
        policies: PoliciesDocument,
    ) -> DesiredState:
        return cls(
            users=frozenset(users.users),
            groups=tuple(groups.groups),
            policies=tuple(policies.policies),
        )


# =============================================================================
# Accounts
# =============================================================================


@dataclass(frozen=True)
class AccountDescriptor:
    """Registry entry for one account.

    A missing role_arn means either the base account (processed without
    impersonation) or an account nobody registered (skipped).
    """

    name: str
    role_arn: str | None = None
    project_mail: str | None = None


# =============================================================================
# Diff
# =============================================================================


@dataclass(frozen=True)
class DiffResult:
    """Name-based difference between desired and observed entities."""

    to_create: frozenset[str]
    to_delete: frozenset[str]

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.to_delete

    def creations(self) -> list[str]:
        """Names to create, in deterministic order."""
        return sorted(self.to_create)

    def deletions(self) -> list[str]:
        """Names to delete, in deterministic order."""
        return sorted(self.to_delete)


def compute_diff(desired: Iterable[str], observed: Iterable[str]) -> DiffResult:
    """Compute desired-minus-observed and observed-minus-desired by name."""
    desired_set = frozenset(desired)
    observed_set = frozenset(observed)
    return DiffResult(
        to_create=desired_set - observed_set,
        to_delete=observed_set - desired_set,
    )
