"""Tests for desired-state loading."""

from pathlib import Path

import pytest
from iam_mock import ALLOW_ALL_DOCUMENT, write_account

from iam_reconciler.config import MAX_SPEC_FILE_SIZE_BYTES
from iam_reconciler.spec_loader import (
    DirectoryStateSource,
    SpecLoadError,
    list_accounts,
    load_desired_state,
)


class TestLoadDesiredState:
    """Tests for load_desired_state."""

    def test_loads_all_documents(self, specs_dir: Path) -> None:
        write_account(
            specs_dir,
            "dev",
            users=["alice", "bob_keys"],
            groups=[{"name": "developers", "users": ["alice"], "policy": "DevAccess"}],
            policies=[{"name": "DevAccess", "document": ALLOW_ALL_DOCUMENT}],
        )

        state = load_desired_state(specs_dir, "dev")

        assert state.users == frozenset({"alice", "bob_keys"})
        assert state.groups[0].name == "developers"
        assert state.groups[0].policy == "DevAccess"
        assert state.policies[0].document == ALLOW_ALL_DOCUMENT

    def test_yaml_extension_accepted(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev", users=["alice"])
        (account_dir / "users.yml").rename(account_dir / "users.yaml")

        state = load_desired_state(specs_dir, "dev")

        assert state.users == frozenset({"alice"})

    def test_empty_document_is_empty_state(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "groups.yml").write_text("")

        state = load_desired_state(specs_dir, "dev")

        assert state.groups == ()

    def test_missing_account_directory(self, specs_dir: Path) -> None:
        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "missing")

        assert "Account directory not found" in str(exc_info.value)

    def test_missing_document(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "policies.yml").unlink()

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        assert "policies.yml" in str(exc_info.value)

    def test_invalid_yaml(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "users.yml").write_text("users: [alice\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        assert "Invalid YAML" in str(exc_info.value)

    def test_invalid_utf8(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "users.yml").write_bytes(b"users: [\xff\xfe]\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        assert "not valid UTF-8" in str(exc_info.value)
        assert "users.yml" in str(exc_info.value)

    def test_non_mapping_document(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "users.yml").write_text("- alice\n- bob\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        assert "mapping" in str(exc_info.value)

    def test_validation_errors_are_formatted(self, specs_dir: Path) -> None:
        write_account(specs_dir, "dev", groups=[{"users": ["alice"]}])

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "groups.0.name" in message

    def test_oversized_document(self, specs_dir: Path) -> None:
        account_dir = write_account(specs_dir, "dev")
        (account_dir / "users.yml").write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired_state(specs_dir, "dev")

        assert "maximum size" in str(exc_info.value)


class TestListAccounts:
    """Tests for account discovery."""

    def test_lists_directories_sorted(self, specs_dir: Path) -> None:
        write_account(specs_dir, "staging")
        write_account(specs_dir, "dev")
        (specs_dir / "README.md").write_text("docs")
        (specs_dir / ".git").mkdir()

        assert list_accounts(specs_dir) == ["dev", "staging"]

    def test_missing_specs_dir(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError):
            list_accounts(tmp_path / "missing")

    def test_directory_source(self, specs_dir: Path) -> None:
        write_account(specs_dir, "dev", users=["alice"])
        source = DirectoryStateSource(specs_dir)

        assert source.specs_dir == specs_dir
        assert source.list_accounts() == ["dev"]
        assert source.load("dev").users == frozenset({"alice"})
