"""Tests for policy full-replacement."""

import pytest
from iam_mock import ALLOW_ALL_DOCUMENT, FakeIdentityService

from iam_reconciler.capability import IdentityServiceError
from iam_reconciler.models import PolicyDescriptor
from iam_reconciler.policies import PolicyReconciler


def desired(*names: str) -> list[PolicyDescriptor]:
    return [PolicyDescriptor(name=name, document=ALLOW_ALL_DOCUMENT) for name in names]


@pytest.fixture
def reconciler() -> PolicyReconciler:
    return PolicyReconciler("/")


class TestPolicyReconciler:
    """Tests for PolicyReconciler.apply."""

    @pytest.mark.asyncio
    async def test_creates_into_empty_account(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        report = await reconciler.apply(desired("DevAccess", "ReadOnly"), iam)

        assert report.success
        assert report.created == ["DevAccess", "ReadOnly"]
        assert report.deleted == []
        assert iam.policy_names() == ["DevAccess", "ReadOnly"]

    @pytest.mark.asyncio
    async def test_replaces_every_existing_policy(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        """Existing policies are deleted even when they are desired again."""
        old_arn = iam.add_policy("DevAccess", document={"old": True})
        iam.add_policy("Legacy")

        report = await reconciler.apply(desired("DevAccess"), iam)

        assert sorted(report.deleted) == ["DevAccess", "Legacy"]
        assert report.created == ["DevAccess"]
        assert iam.policy_names() == ["DevAccess"]
        assert iam.policies[old_arn].document == ALLOW_ALL_DOCUMENT

    @pytest.mark.asyncio
    async def test_all_deletions_resolve_before_any_creation(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        iam.add_policy("A", groups=("dev",))
        iam.add_policy("B")
        iam.slow("delete_policy", 3)

        await reconciler.apply(desired("C", "D"), iam)

        last_delete = max(call.finished for call in iam.calls_for("delete_policy"))
        first_create = min(call.started for call in iam.calls_for("create_policy"))
        assert last_delete < first_create

    @pytest.mark.asyncio
    async def test_detaches_from_all_entities_before_delete(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        arn = iam.add_policy("Shared", groups=("dev", "ops"), users=("alice",), roles=("ci",))

        report = await reconciler.apply([], iam)

        assert report.deleted == ["Shared"]
        assert arn not in iam.policies
        assert iam.groups["dev"].policies == set()
        assert iam.groups["ops"].policies == set()

        detaches = [
            call
            for call in iam.calls
            if call.operation.startswith("detach_")
        ]
        delete = iam.calls_for("delete_policy")[0]
        assert len(detaches) == 4
        assert all(call.finished < delete.started for call in detaches)

    @pytest.mark.asyncio
    async def test_failed_detach_keeps_policy(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        arn = iam.add_policy("Shared", groups=("dev", "ops"))
        iam.fail("detach_group_policy", target="ops")

        report = await reconciler.apply(desired("Other"), iam)

        assert "Shared" in report.failures
        assert report.failures["Shared"].startswith("delete:")
        assert arn in iam.policies
        assert iam.calls_for("delete_policy") == []
        # The sibling detach still ran
        assert iam.groups["dev"].policies == set()
        assert report.created == ["Other"]

    @pytest.mark.asyncio
    async def test_missing_document_is_skipped(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        policies = [PolicyDescriptor(name="Broken"), *desired("Good")]

        report = await reconciler.apply(policies, iam)

        assert report.created == ["Good"]
        assert report.failures["Broken"].startswith("invalid document:")
        assert [call.args[0] for call in iam.calls_for("create_policy")] == ["Good"]

    @pytest.mark.asyncio
    async def test_rejected_document_is_isolated(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        policies = [PolicyDescriptor(name="Malformed", document={"Version": "x"}), *desired("Ok")]

        report = await reconciler.apply(policies, iam)

        assert report.created == ["Ok"]
        assert report.failures["Malformed"].startswith("invalid document:")

    @pytest.mark.asyncio
    async def test_create_failure_is_isolated(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        iam.fail("create_policy", target="A")

        report = await reconciler.apply(desired("A", "B"), iam)

        assert report.created == ["B"]
        assert report.failures["A"].startswith("create:")

    @pytest.mark.asyncio
    async def test_list_failure_propagates(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        iam.fail("list_policies")

        with pytest.raises(IdentityServiceError):
            await reconciler.apply(desired("A"), iam)

    @pytest.mark.asyncio
    async def test_only_managed_path_is_touched(self, iam: FakeIdentityService) -> None:
        iam.add_policy("Outside", path="/other/")
        iam.add_policy("Inside", path="/managed/")

        report = await PolicyReconciler("/managed/").apply([], iam)

        assert report.deleted == ["Inside"]
        assert iam.policy_names() == ["Outside"]


class TestResolveArns:
    """Tests for name to ARN resolution."""

    @pytest.mark.asyncio
    async def test_reads_live_listing(
        self, reconciler: PolicyReconciler, iam: FakeIdentityService
    ) -> None:
        assert await reconciler.resolve_arns("Dev", iam) == []

        arn = iam.add_policy("Dev")

        assert await reconciler.resolve_arns("Dev", iam) == [arn]
