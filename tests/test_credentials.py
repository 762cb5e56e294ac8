"""Tests for the credential context and STS impersonation."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from iam_mock import FakeIdentityService, FakeImpersonator, role_arn_for

from iam_reconciler.credentials import (
    AccountNotRegistered,
    CredentialContext,
    CredentialLeakError,
    ImpersonationError,
    StsImpersonator,
    role_session_name,
)
from iam_reconciler.iam_backend import Boto3IdentityCapability
from iam_reconciler.models import AccountDescriptor

DEV = AccountDescriptor(name="dev", role_arn=role_arn_for("dev"))
STAGING = AccountDescriptor(name="staging", role_arn=role_arn_for("staging"))
ROOT = AccountDescriptor(name="root")


@pytest.fixture
def base() -> FakeIdentityService:
    return FakeIdentityService(label="base")


@pytest.fixture
def impersonator() -> FakeImpersonator:
    return FakeImpersonator()


@pytest.fixture
def context(base: FakeIdentityService, impersonator: FakeImpersonator) -> CredentialContext:
    return CredentialContext(base, impersonator, root_account_name="root")


class TestCredentialContext:
    """Tests for CredentialContext."""

    @pytest.mark.asyncio
    async def test_assume_registered_account(
        self,
        context: CredentialContext,
        base: FakeIdentityService,
        impersonator: FakeImpersonator,
    ) -> None:
        capability = await context.assume(DEV)

        assert capability is impersonator.service_for(DEV.role_arn)
        assert context.active is capability
        assert context.is_impersonating
        assert context.assumed_account == "dev"
        assert context.base_identity is base

    @pytest.mark.asyncio
    async def test_root_account_uses_base(
        self, context: CredentialContext, base: FakeIdentityService, impersonator: FakeImpersonator
    ) -> None:
        capability = await context.assume(ROOT)

        assert capability is base
        assert not context.is_impersonating
        assert context.assumed_account == "root"
        assert impersonator.impersonated == []

    @pytest.mark.asyncio
    async def test_unregistered_account(self, context: CredentialContext) -> None:
        with pytest.raises(AccountNotRegistered) as exc_info:
            await context.assume(AccountDescriptor(name="unknown"))

        assert exc_info.value.account_name == "unknown"
        assert context.assumed_account is None
        assert not context.is_impersonating

    @pytest.mark.asyncio
    async def test_impersonation_failure_leaves_base_active(
        self, context: CredentialContext, base: FakeIdentityService, impersonator: FakeImpersonator
    ) -> None:
        impersonator.fail_for(DEV.role_arn)

        with pytest.raises(ImpersonationError):
            await context.assume(DEV)

        assert context.active is base
        assert context.assumed_account is None

    @pytest.mark.asyncio
    async def test_revert_restores_base(
        self, context: CredentialContext, base: FakeIdentityService
    ) -> None:
        await context.assume(DEV)

        context.revert()

        assert context.active is base
        assert context.assumed_account is None
        assert not context.is_impersonating

    def test_revert_is_idempotent(
        self, context: CredentialContext, base: FakeIdentityService
    ) -> None:
        context.revert()
        context.revert()

        assert context.active is base

    @pytest.mark.asyncio
    async def test_second_assume_without_revert_is_rejected(
        self, context: CredentialContext
    ) -> None:
        await context.assume(DEV)

        with pytest.raises(CredentialLeakError):
            await context.assume(STAGING)

        assert context.assumed_account == "dev"

    @pytest.mark.asyncio
    async def test_session_reverts_on_error(
        self, context: CredentialContext, base: FakeIdentityService
    ) -> None:
        with pytest.raises(RuntimeError):
            async with context.session(DEV) as capability:
                assert context.active is capability
                raise RuntimeError("stage blew up")

        assert context.active is base
        assert context.assumed_account is None

    @pytest.mark.asyncio
    async def test_sequential_accounts(
        self, context: CredentialContext, impersonator: FakeImpersonator
    ) -> None:
        async with context.session(DEV):
            pass
        async with context.session(STAGING) as capability:
            assert capability is impersonator.service_for(STAGING.role_arn)

        assert impersonator.impersonated == ["dev", "staging"]


class TestStsImpersonator:
    """Tests for StsImpersonator."""

    def test_role_session_name(self) -> None:
        assert role_session_name("dev") == "iam-reconciler-dev"
        assert role_session_name("team a/b") == "iam-reconciler-team-a-b"
        assert len(role_session_name("x" * 100)) == 64

    @pytest.mark.asyncio
    async def test_assume_role(self) -> None:
        session = MagicMock()
        sts = session.client.return_value
        sts.assume_role.return_value = {
            "Credentials": {
                "AccessKeyId": "ASIAEXAMPLE",
                "SecretAccessKey": "secret",
                "SessionToken": "token",
            }
        }
        impersonator = StsImpersonator(session, duration_seconds=900, region_name="eu-west-1")

        with patch("iam_reconciler.credentials.boto3.Session") as session_cls:
            capability = await impersonator.impersonate(DEV)

        sts.assume_role.assert_called_once_with(
            RoleArn=DEV.role_arn,
            RoleSessionName="iam-reconciler-dev",
            DurationSeconds=900,
        )
        session_cls.assert_called_once_with(
            aws_access_key_id="ASIAEXAMPLE",
            aws_secret_access_key="secret",
            aws_session_token="token",
            region_name="eu-west-1",
        )
        session_cls.return_value.client.assert_called_once_with("iam")
        assert isinstance(capability, Boto3IdentityCapability)
        assert capability.label == "assumed:dev"

    @pytest.mark.asyncio
    async def test_access_denied(self) -> None:
        session = MagicMock()
        session.client.return_value.assume_role.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "not trusted"}}, "AssumeRole"
        )

        with pytest.raises(ImpersonationError) as exc_info:
            await StsImpersonator(session).impersonate(DEV)

        assert DEV.role_arn in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_role(self) -> None:
        with pytest.raises(ImpersonationError):
            await StsImpersonator(MagicMock()).impersonate(ROOT)
