"""
Tests for CLI entry point (ledger_sync/main.py).

Validates argument parsing, command dispatch, and error handling.
"""

import json
import logging
from unittest.mock import Mock, patch

import pytest

from ledger_sync.core.models import SyncConfig
from ledger_sync.main import configure_logging, main


@pytest.fixture(autouse=True)
def no_file_logging():
    with patch('ledger_sync.main.configure_logging'):
        yield


def dispatch(command_name, argv):
    with patch(f'ledger_sync.main.{command_name}') as mock_cls:
        mock_instance = Mock()
        mock_instance.run.return_value = True
        mock_cls.return_value = mock_instance
        with patch('ledger_sync.main.load_config', return_value=SyncConfig()):
            result = main(argv)
    return result, mock_cls, mock_instance


class TestMainCLI:
    """Test suite for main CLI entry point."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()

    def test_sync_defaults_to_dry_run(self):
        result, _, instance = dispatch('SyncCommand', ['sync'])
        instance.run.assert_called_once_with(apply_changes=False, mode=None, watch=False)
        assert result == 0

    def test_sync_flags(self):
        _, _, instance = dispatch('SyncCommand', ['sync', '--apply', '--full', '--watch'])
        instance.run.assert_called_once_with(apply_changes=True, mode='full', watch=True)

    def test_full_and_delta_are_exclusive(self):
        with pytest.raises(SystemExit):
            main(['sync', '--full', '--delta'])

    def test_dedupe_flags(self):
        _, _, instance = dispatch('DedupeCommand', ['dedupe', '--apply', '--hard', '--purge-expired'])
        instance.run.assert_called_once_with(apply_changes=True, hard=True, purge_expired=True)

    def test_classify_arguments(self):
        _, _, instance = dispatch(
            'ClassifyCommand', ['classify', 'Send invoice', '--notes', 'n', '--tag', 'a', '--tag', 'b', '--json']
        )
        instance.run.assert_called_once_with('Send invoice', notes='n', tags=['a', 'b'], as_json=True)

    def test_status_dispatch(self):
        result, mock_cls, _ = dispatch('StatusCommand', ['status'])
        mock_cls.assert_called_once()
        assert result == 0

    def test_failed_command_returns_one(self):
        with patch('ledger_sync.main.StatusCommand') as mock_cls:
            mock_cls.return_value.run.return_value = False
            assert main(['status']) == 1

    def test_unexpected_error(self, capsys):
        with patch('ledger_sync.main.StatusCommand') as mock_cls:
            mock_cls.return_value.run.side_effect = RuntimeError("boom")
            assert main(['status']) == 1
        out = capsys.readouterr().out
        assert "Error: boom" in out
        assert "--verbose" in out

    def test_keyboard_interrupt(self):
        with patch('ledger_sync.main.StatusCommand') as mock_cls:
            mock_cls.return_value.run.side_effect = KeyboardInterrupt
            assert main(['status']) == 130

    def test_classify_end_to_end(self, capsys):
        assert main(['classify', 'Fix the washing machine', '--json']) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["persona"] == "personal"
        assert payload["suggestedTheme"] == "Home"


def test_configure_logging_adds_one_file_handler(isolated_home):
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        configure_logging(False)
        configure_logging(False)
        added = [h for h in root.handlers if h not in before]
        assert len(added) == 1
        assert added[0].baseFilename.endswith("ledger-sync.log")
    finally:
        root.setLevel(level)
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
