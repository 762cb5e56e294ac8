"""Tests for process wiring and structured logging."""

import json
import logging
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from iam_mock import write_account

from iam_reconciler.config import Config
from iam_reconciler.main import JsonFormatter, build_orchestrator, main, resolve_accounts
from iam_reconciler.orchestrator import Orchestrator
from iam_reconciler.spec_loader import DirectoryStateSource


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_extras(self) -> None:
        record = logging.LogRecord(
            name="iam_reconciler.users",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Creating new user",
            args=(),
            exc_info=None,
        )
        record.user = "alice"
        record.account = "dev"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Creating new user"
        assert data["level"] == "INFO"
        assert data["logger"] == "iam_reconciler.users"
        assert data["user"] == "alice"
        assert data["account"] == "dev"
        assert data["timestamp"].endswith("Z")
        assert "pathname" not in data

    def test_non_serializable_extras(self) -> None:
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)
        record.path = Path("/specs")

        data = json.loads(JsonFormatter().format(record))

        assert data["path"] == "/specs"


class TestWiring:
    """Tests for orchestrator construction."""

    def test_build_orchestrator_uses_base_session(self, config: Config) -> None:
        session = MagicMock()

        orchestrator = build_orchestrator(config, session)

        assert isinstance(orchestrator, Orchestrator)
        requested = [call.args[0] for call in session.client.call_args_list]
        assert sorted(requested) == ["dynamodb", "iam", "ses"]

    def test_resolve_accounts_prefers_configured_list(self, config: Config) -> None:
        write_account(config.specs_dir, "dev")
        source = DirectoryStateSource(config.specs_dir)

        assert resolve_accounts(config, source) == ["dev"]

        configured = Config(
            mail_sender=config.mail_sender, specs_dir=config.specs_dir, accounts=("prod",)
        )
        assert resolve_accounts(configured, source) == ["prod"]


class TestMain:
    """Tests for the process entry point."""

    @pytest.mark.asyncio
    async def test_configuration_error_exit_code(self) -> None:
        with patch.dict(os.environ, {}, clear=True), patch("iam_reconciler.main.setup_logging"):
            assert await main() == 1

    @pytest.mark.asyncio
    async def test_success_exit_code(self, specs_dir: Path) -> None:
        env = {"MAIL_SENDER": "iam-admin@example.com", "SPECS_DIR": str(specs_dir)}
        report = MagicMock(success=True)

        with (
            patch.dict(os.environ, env, clear=True),
            patch("iam_reconciler.main.setup_logging"),
            patch("iam_reconciler.main.run_once", return_value=report) as run_once,
        ):
            assert await main() == 0

        run_once.assert_awaited_once()
