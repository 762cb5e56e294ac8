"""Production identity capability backed by a boto3 IAM client.

boto3 is synchronous, so each call runs in the default executor and is
awaited by the reconcilers. Service errors are translated into the typed
taxonomy from capability.py; throttling is retried here with exponential
backoff so reconcilers never have to care about rate limits.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import random
from collections.abc import Callable
from typing import Any, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from .capability import (
    AccessKey,
    AlreadyExists,
    ConflictError,
    IdentityServiceError,
    InvalidPolicyDocument,
    NotFound,
    PolicyAttachments,
    PolicyInfo,
    Throttled,
)
from .config import MAX_API_RETRIES, RETRY_BACKOFF_BASE_SECONDS

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_CODE_MAP: dict[str, type[IdentityServiceError]] = {
    "NoSuchEntity": NotFound,
    "EntityAlreadyExists": AlreadyExists,
    "DeleteConflict": ConflictError,
    "MalformedPolicyDocument": InvalidPolicyDocument,
}

THROTTLING_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
    }
)


def get_error_code(error: ClientError) -> str:
    """Extract the service error code from a botocore ClientError."""
    return error.response.get("Error", {}).get("Code", "Unknown")


def translate_client_error(error: ClientError, operation: str) -> IdentityServiceError:
    """Map a botocore ClientError onto the identity error taxonomy."""
    code = get_error_code(error)
    message = f"{operation} failed: {error}"

    if code in THROTTLING_ERROR_CODES:
        return Throttled(message, code=code)

    error_class = ERROR_CODE_MAP.get(code, IdentityServiceError)
    return error_class(message, code=code)


class Boto3IdentityCapability:
    """IdentityCapability implementation over a boto3 IAM client."""

    def __init__(
        self,
        client: Any,
        label: str,
        *,
        max_retries: int = MAX_API_RETRIES,
        backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        """Initialize the backend.

        Args:
            client: boto3 IAM client (``session.client("iam")``).
            label: Human-readable identity label used in logs.
            max_retries: Attempts per call when throttled.
            backoff_base_seconds: First backoff interval, doubled per attempt.
        """
        self._client = client
        self.label = label
        self._max_retries = max(1, max_retries)
        self._backoff_base_seconds = backoff_base_seconds

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking SDK call with error translation and throttling retry."""
        loop = asyncio.get_running_loop()
        last_error: Throttled | None = None

        for attempt in range(1, self._max_retries + 1):
            try:
                return await loop.run_in_executor(None, fn)
            except ClientError as e:
                translated = translate_client_error(e, operation)
                if not isinstance(translated, Throttled):
                    raise translated from e
                last_error = translated
            except BotoCoreError as e:
                raise IdentityServiceError(f"{operation} failed: {e}") from e

            if attempt < self._max_retries:
                # Exponential backoff with jitter
                backoff = self._backoff_base_seconds * (2 ** (attempt - 1))
                wait_time = backoff + random.uniform(0, backoff * 0.2)
                logger.warning(
                    "Identity API throttled, retrying",
                    extra={
                        "identity": self.label,
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": self._max_retries,
                        "wait_seconds": wait_time,
                    },
                )
                await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error

    async def _request(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        method = getattr(self._client, operation)
        return await self._call(operation, functools.partial(method, **kwargs))

    async def _paginate(self, operation: str, **kwargs: Any) -> list[dict[str, Any]]:
        def collect() -> list[dict[str, Any]]:
            paginator = self._client.get_paginator(operation)
            return list(paginator.paginate(**kwargs))

        return await self._call(operation, collect)

    # Users

    async def list_users(self, path_prefix: str) -> list[str]:
        pages = await self._paginate("list_users", PathPrefix=path_prefix)
        return [user["UserName"] for page in pages for user in page.get("Users", [])]

    async def create_user(self, user_name: str, path: str) -> None:
        await self._request("create_user", UserName=user_name, Path=path)

    async def delete_user(self, user_name: str) -> None:
        await self._request("delete_user", UserName=user_name)

    async def create_login_profile(
        self, user_name: str, password: str, reset_required: bool
    ) -> None:
        await self._request(
            "create_login_profile",
            UserName=user_name,
            Password=password,
            PasswordResetRequired=reset_required,
        )

    async def delete_login_profile(self, user_name: str) -> None:
        await self._request("delete_login_profile", UserName=user_name)

    async def create_access_key(self, user_name: str) -> AccessKey:
        response = await self._request("create_access_key", UserName=user_name)
        key = response["AccessKey"]
        return AccessKey(
            user_name=key["UserName"],
            access_key_id=key["AccessKeyId"],
            secret_access_key=key["SecretAccessKey"],
        )

    async def list_access_keys(self, user_name: str) -> list[str]:
        pages = await self._paginate("list_access_keys", UserName=user_name)
        return [
            key["AccessKeyId"] for page in pages for key in page.get("AccessKeyMetadata", [])
        ]

    async def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        await self._request("delete_access_key", UserName=user_name, AccessKeyId=access_key_id)

    # Groups

    async def list_groups(self, path_prefix: str) -> list[str]:
        pages = await self._paginate("list_groups", PathPrefix=path_prefix)
        return [group["GroupName"] for page in pages for group in page.get("Groups", [])]

    async def get_group_members(self, group_name: str) -> list[str]:
        pages = await self._paginate("get_group", GroupName=group_name)
        return [user["UserName"] for page in pages for user in page.get("Users", [])]

    async def create_group(self, group_name: str, path: str) -> None:
        await self._request("create_group", GroupName=group_name, Path=path)

    async def delete_group(self, group_name: str) -> None:
        await self._request("delete_group", GroupName=group_name)

    async def list_groups_for_user(self, user_name: str) -> list[str]:
        pages = await self._paginate("list_groups_for_user", UserName=user_name)
        return [group["GroupName"] for page in pages for group in page.get("Groups", [])]

    async def add_user_to_group(self, user_name: str, group_name: str) -> None:
        await self._request("add_user_to_group", UserName=user_name, GroupName=group_name)

    async def remove_user_from_group(self, user_name: str, group_name: str) -> None:
        await self._request("remove_user_from_group", UserName=user_name, GroupName=group_name)

    async def attach_group_policy(self, group_name: str, policy_arn: str) -> None:
        await self._request("attach_group_policy", GroupName=group_name, PolicyArn=policy_arn)

    async def list_attached_group_policies(self, group_name: str) -> list[str]:
        pages = await self._paginate("list_attached_group_policies", GroupName=group_name)
        return [
            policy["PolicyArn"]
            for page in pages
            for policy in page.get("AttachedPolicies", [])
        ]

    # Policies

    async def list_policies(self, path_prefix: str) -> list[PolicyInfo]:
        pages = await self._paginate("list_policies", Scope="Local", PathPrefix=path_prefix)
        return [
            PolicyInfo(name=policy["PolicyName"], arn=policy["Arn"])
            for page in pages
            for policy in page.get("Policies", [])
        ]

    async def create_policy(
        self, policy_name: str, document: dict[str, Any], path: str
    ) -> PolicyInfo:
        response = await self._request(
            "create_policy",
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document),
            Path=path,
        )
        policy = response["Policy"]
        return PolicyInfo(name=policy["PolicyName"], arn=policy["Arn"])

    async def delete_policy(self, policy_arn: str) -> None:
        # DeletePolicy is rejected while non-default versions exist
        pages = await self._paginate("list_policy_versions", PolicyArn=policy_arn)
        for page in pages:
            for version in page.get("Versions", []):
                if not version.get("IsDefaultVersion"):
                    await self._request(
                        "delete_policy_version",
                        PolicyArn=policy_arn,
                        VersionId=version["VersionId"],
                    )
        await self._request("delete_policy", PolicyArn=policy_arn)

    async def list_policy_attachments(self, policy_arn: str) -> PolicyAttachments:
        pages = await self._paginate("list_entities_for_policy", PolicyArn=policy_arn)
        return PolicyAttachments(
            groups=tuple(g["GroupName"] for page in pages for g in page.get("PolicyGroups", [])),
            users=tuple(u["UserName"] for page in pages for u in page.get("PolicyUsers", [])),
            roles=tuple(r["RoleName"] for page in pages for r in page.get("PolicyRoles", [])),
        )

    async def detach_group_policy(self, group_name: str, policy_arn: str) -> None:
        await self._request("detach_group_policy", GroupName=group_name, PolicyArn=policy_arn)

    async def detach_user_policy(self, user_name: str, policy_arn: str) -> None:
        await self._request("detach_user_policy", UserName=user_name, PolicyArn=policy_arn)

    async def detach_role_policy(self, role_name: str, policy_arn: str) -> None:
        await self._request("detach_role_policy", RoleName=role_name, PolicyArn=policy_arn)
