"""In-memory IAM, DynamoDB and mail fakes for testing.

The fakes enforce the ordering rules of the real services that the
reconcilers rely on, so a wrong call order fails the same way it would
against AWS.

Usage:
    from iam_mock import FakeIdentityService

    iam = FakeIdentityService()
    iam.add_user("alice", groups=("dev",))
    iam.fail("create_group", target="ops")

    report = await reconciler.apply(desired, iam)
    assert iam.operations() == [...]
"""

from .accounts import FakeDynamoClient, FakeImpersonator, role_arn_for
from .identity import Call, FakeIdentityService
from .mail import FakeMailTransport
from .specs import ALLOW_ALL_DOCUMENT, write_account

__all__ = [
    "ALLOW_ALL_DOCUMENT",
    "Call",
    "FakeDynamoClient",
    "FakeIdentityService",
    "FakeImpersonator",
    "FakeMailTransport",
    "role_arn_for",
    "write_account",
]
