"""Desired-state loading with validation.

Each account has its own directory under the specs directory holding
three documents: users.yml, groups.yml and policies.yml. The directory
tree is kept in sync with the source repository by a git-sync sidecar.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import DesiredState, GroupsDocument, PoliciesDocument, UsersDocument

logger = logging.getLogger(__name__)

DocumentT = TypeVar("DocumentT", bound=BaseModel)

DOCUMENT_SUFFIXES = (".yml", ".yaml")


class SpecLoadError(Exception):
    """Raised when a desired-state document cannot be loaded or validated."""

    pass


def _find_document(account_dir: Path, name: str) -> Path:
    for suffix in DOCUMENT_SUFFIXES:
        candidate = account_dir / f"{name}{suffix}"
        if candidate.exists():
            return candidate
    raise SpecLoadError(f"Document '{name}.yml' not found in {account_dir}")


def _read_yaml(path: Path) -> dict[str, Any]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Document exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Document is not valid UTF-8: {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    # An empty file is an empty document
    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Document must contain a YAML mapping: {path}")
    return raw_data


def _validate(path: Path, model: type[DocumentT], data: dict[str, Any]) -> DocumentT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_document(account_dir: Path, name: str, model: type[DocumentT]) -> DocumentT:
    """Load and validate one named document from an account directory."""
    path = _find_document(account_dir, name)
    return _validate(path, model, _read_yaml(path))


def load_desired_state(specs_dir: Path, account: str) -> DesiredState:
    """Load the complete desired state for one account.

    Args:
        specs_dir: Directory containing one sub-directory per account.
        account: The account name (directory name).

    Returns:
        Validated, immutable desired state.

    Raises:
        SpecLoadError: If any document is missing, unreadable or invalid.
    """
    account_dir = specs_dir / account
    if not account_dir.is_dir():
        raise SpecLoadError(f"Account directory not found: {account_dir}")

    users = load_document(account_dir, "users", UsersDocument)
    groups = load_document(account_dir, "groups", GroupsDocument)
    policies = load_document(account_dir, "policies", PoliciesDocument)

    state = DesiredState.from_documents(users, groups, policies)
    logger.info(
        "Loaded desired state",
        extra={
            "account": account,
            "users": len(state.users),
            "groups": len(state.groups),
            "policies": len(state.policies),
        },
    )
    return state


def list_accounts(specs_dir: Path) -> list[str]:
    """List account directories under the specs directory.

    Entries containing a dot are files or hidden directories and are skipped.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    accounts = []
    for entry in sorted(specs_dir.iterdir()):
        if "." in entry.name or not entry.is_dir():
            logger.debug("Skipping non-account entry", extra={"entry": entry.name})
            continue
        accounts.append(entry.name)
    return accounts


class DirectoryStateSource:
    """Desired-state source reading account directories from disk."""

    def __init__(self, specs_dir: Path) -> None:
        self._specs_dir = specs_dir

    @property
    def specs_dir(self) -> Path:
        return self._specs_dir

    def list_accounts(self) -> list[str]:
        return list_accounts(self._specs_dir)

    def load(self, account: str) -> DesiredState:
        return load_desired_state(self._specs_dir, account)
