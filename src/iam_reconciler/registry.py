"""Account registry backed by a DynamoDB table.

Each item is keyed by ``account_name`` and carries the trust role to
assume (``RoleArn``) and the project contact address (``ProjectMail``).
The registry is read-only; items are maintained outside this service.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from .models import AccountDescriptor

logger = logging.getLogger(__name__)

ACCOUNT_NAME_KEY = "account_name"
ROLE_ARN_ATTRIBUTE = "RoleArn"
PROJECT_MAIL_ATTRIBUTE = "ProjectMail"


class RegistryError(Exception):
    """Raised when the registry store cannot be queried."""

    pass


def _string_attribute(item: dict[str, Any], name: str) -> str | None:
    value = item.get(name, {}).get("S")
    return value or None


class AccountRegistry:
    """Read-only lookup from account name to AccountDescriptor."""

    def __init__(self, client: Any, table_name: str) -> None:
        """Initialize registry.

        Args:
            client: boto3 DynamoDB client.
            table_name: Registry table name.
        """
        self._client = client
        self._table_name = table_name

    def query_params(self, account_name: str) -> dict[str, Any]:
        """Build the GetItem request for an account."""
        return {
            "TableName": self._table_name,
            "Key": {ACCOUNT_NAME_KEY: {"S": account_name}},
        }

    async def get(self, account_name: str) -> AccountDescriptor:
        """Look up an account.

        A missing item is not an error: it yields a descriptor without a
        role, which the credential context either treats as the base
        account or rejects as unregistered.

        Raises:
            RegistryError: If the store cannot be queried.
        """
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                functools.partial(self._client.get_item, **self.query_params(account_name)),
            )
        except (ClientError, BotoCoreError) as e:
            raise RegistryError(f"Registry lookup failed for '{account_name}': {e}") from e

        item = response.get("Item")
        if not item:
            logger.info("Account not present in registry", extra={"account": account_name})
            return AccountDescriptor(name=account_name)

        descriptor = AccountDescriptor(
            name=account_name,
            role_arn=_string_attribute(item, ROLE_ARN_ATTRIBUTE),
            project_mail=_string_attribute(item, PROJECT_MAIL_ATTRIBUTE),
        )
        logger.info(
            "Account resolved from registry",
            extra={
                "account": account_name,
                "role_arn": descriptor.role_arn,
                "has_project_mail": descriptor.project_mail is not None,
            },
        )
        return descriptor
