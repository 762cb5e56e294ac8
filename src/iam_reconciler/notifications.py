"""Outbound credential notifications.

Mail jobs are produced while accounts are being reconciled but are only
sent after the account loop has finished and every assumed identity has
been reverted, so delivery always happens under the base identity.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

MAIL_SUBJECT = "[AWS-IAM-Manager] Your AWS account is ready."
SES_CHARSET = "UTF-8"


@dataclass(frozen=True)
class MailJob:
    """One outbound message. The body carries a secret and is kept out of repr."""

    recipients: tuple[str, ...]
    subject: str
    body: str = field(repr=False)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of sending one MailJob."""

    recipients: tuple[str, ...]
    subject: str
    message_id: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def _recipients(recipient: str, cc: tuple[str, ...]) -> tuple[str, ...]:
    # Primary recipient first; an address appears once
    return tuple(dict.fromkeys((recipient, *cc)))


def login_profile_mail(
    recipient: str, account: str, user_name: str, password: str, cc: tuple[str, ...] = ()
) -> MailJob:
    """Build the notification for a new console user."""
    body = (
        "Your IAM User has been created.\n\n"
        f"Account: {account}\n"
        f"Credentials: {user_name} / {password}\n\n"
        "You will be asked to change this password on first sign-in."
    )
    return MailJob(recipients=_recipients(recipient, cc), subject=MAIL_SUBJECT, body=body)


def access_key_mail(
    recipient: str,
    account: str,
    user_name: str,
    access_key_id: str,
    secret_access_key: str,
    cc: tuple[str, ...] = (),
) -> MailJob:
    """Build the notification for a new programmatic user."""
    body = (
        "Your IAM User has been created.\n\n"
        f"Account: {account}\n"
        f"User: {user_name}\n"
        f"Access key ID: {access_key_id}\n"
        f"Secret access key: {secret_access_key}"
    )
    return MailJob(recipients=_recipients(recipient, cc), subject=MAIL_SUBJECT, body=body)


class MailTransport(Protocol):
    """Delivers a single MailJob and returns the transport's message id."""

    async def send(self, job: MailJob) -> str: ...


class MailDeliveryError(Exception):
    """Raised by a transport when a message cannot be delivered."""

    pass


class SesMailTransport:
    """MailTransport over the Amazon SES SendEmail API."""

    def __init__(self, client: Any, sender: str) -> None:
        """Initialize transport.

        Args:
            client: boto3 SES client created from the base session.
            sender: Verified source address.
        """
        self._client = client
        self._sender = sender

    def request_params(self, job: MailJob) -> dict[str, Any]:
        return {
            "Source": self._sender,
            "Destination": {"ToAddresses": list(job.recipients)},
            "Message": {
                "Subject": {"Data": job.subject, "Charset": SES_CHARSET},
                "Body": {"Text": {"Data": job.body, "Charset": SES_CHARSET}},
            },
        }

    async def send(self, job: MailJob) -> str:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                functools.partial(self._client.send_email, **self.request_params(job)),
            )
        except (ClientError, BotoCoreError) as e:
            raise MailDeliveryError(f"SES delivery failed: {e}") from e
        return response["MessageId"]


class NotificationQueue:
    """Append-only buffer of mail jobs, drained by a single flush."""

    def __init__(self, transport: MailTransport) -> None:
        self._transport = transport
        self._jobs: list[MailJob] = []

    @property
    def pending(self) -> int:
        return len(self._jobs)

    def enqueue(self, job: MailJob) -> None:
        self._jobs.append(job)
        logger.info(
            "Mail job queued",
            extra={"recipients": list(job.recipients), "pending": len(self._jobs)},
        )

    async def flush_all(self) -> list[DeliveryResult]:
        """Send every queued job in order and empty the queue.

        A failed delivery does not stop the remaining jobs; it is reported
        in the returned results.
        """
        jobs, self._jobs = self._jobs, []
        results: list[DeliveryResult] = []

        for job in jobs:
            try:
                message_id = await self._transport.send(job)
            except Exception as e:
                logger.error(
                    "Mail delivery failed",
                    extra={"recipients": list(job.recipients), "error": str(e)},
                )
                results.append(
                    DeliveryResult(recipients=job.recipients, subject=job.subject, error=str(e))
                )
                continue

            logger.info(
                "Mail delivered",
                extra={"recipients": list(job.recipients), "message_id": message_id},
            )
            results.append(
                DeliveryResult(
                    recipients=job.recipients, subject=job.subject, message_id=message_id
                )
            )

        return results
