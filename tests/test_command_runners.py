"""Tests for storage/command_runners.py - subprocess and ssh helpers."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from odb_clone_backup.exceptions import CommandError, CommandTimeoutError
from odb_clone_backup.storage.command_runners import (
    command_output,
    run_checked_command,
    run_command,
    ssh_command,
    with_sudo,
)


class TestRunCommand:
    @patch("subprocess.run")
    def test_passes_argument_list(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="ok\n", stderr="")

        result = run_command(["pvscan", "--cache"], timeout=10)

        assert result.returncode == 0
        mock_run.assert_called_once_with(
            ["pvscan", "--cache"],
            input=None,
            text=True,
            capture_output=True,
            timeout=10,
        )

    @patch("subprocess.run")
    def test_forwards_stdin(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        run_command(["acli", "vg.delete", "x"], input_text="yes\n")

        assert mock_run.call_args.kwargs["input"] == "yes\n"

    @patch("subprocess.run")
    def test_nonzero_exit_does_not_raise(self, mock_run):
        mock_run.return_value = Mock(returncode=5, stdout="", stderr="failed")

        assert run_command(["lvs"]).returncode == 5

    @patch("subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["ssh"], timeout=15)

        with pytest.raises(CommandTimeoutError) as exc_info:
            run_command(["ssh", "cvm"], timeout=15)

        assert exc_info.value.timeout == 15
        assert exc_info.value.returncode is None

    @patch("subprocess.run")
    def test_missing_executable(self, mock_run):
        mock_run.side_effect = FileNotFoundError("No such file or directory: 'acli'")

        with pytest.raises(CommandError, match="No such file"):
            run_command(["acli"])


class TestRunCheckedCommand:
    @patch("subprocess.run")
    def test_returns_stdout(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="uuid\n", stderr="")

        assert run_checked_command(["dmidecode", "-s", "system-uuid"]) == "uuid\n"

    @patch("subprocess.run")
    def test_raises_with_stderr(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="permission denied")

        with pytest.raises(CommandError) as exc_info:
            run_checked_command(["vgremove", "-y", "prdvg"])

        assert exc_info.value.returncode == 1
        assert exc_info.value.output == "permission denied"
        assert exc_info.value.command == ["vgremove", "-y", "prdvg"]


def test_command_output_prefers_stderr():
    assert command_output(Mock(stdout="out", stderr=" err \n")) == "err"
    assert command_output(Mock(stdout="out\n", stderr="")) == "out"
    assert command_output(Mock(stdout=None, stderr=None)) == ""


class TestSshCommand:
    def test_quotes_remote_arguments(self):
        command = ssh_command("nutanix", "cvm01", ["acli", "vg.create", "a b"], ssh_options=())

        assert command == ["ssh", "nutanix@cvm01", "acli vg.create 'a b'"]

    def test_default_options(self):
        command = ssh_command("epicadm", "odb01", ["true"])

        assert command[:5] == ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]

    def test_requires_host(self):
        with pytest.raises(ValueError):
            ssh_command("epicadm", "", ["true"])


def test_with_sudo():
    assert with_sudo(["mount"], True) == ["sudo", "-n", "mount"]
    assert with_sudo(["mount"], False) == ["mount"]
