"""Tests for the CommandRunner."""
import pytest
from unittest.mock import patch, MagicMock
import sh

from kubestrap.errors import NetworkFetchError, StepExecutionError
from kubestrap.runner import CommandResult, CommandRunner


@pytest.fixture
def mock_sh():
    """Replace sh inside the runner, keeping its real exception classes."""
    with patch('kubestrap.runner.sh') as mocked:
        mocked.ErrorReturnCode = sh.ErrorReturnCode
        mocked.CommandNotFound = sh.CommandNotFound
        yield mocked


class TestBuildArgv:
    """Tests for argv construction."""

    def test_plain_command(self):
        assert CommandRunner.build_argv("kubectl", ("get", "nodes")) == ["kubectl", "get", "nodes"]

    def test_arguments_are_stringified(self):
        assert CommandRunner.build_argv("minikube", ("start", 2)) == ["minikube", "start", "2"]

    def test_run_as_user_wraps_in_su(self):
        argv = CommandRunner.build_argv("minikube", ("start", "--memory=4g"), user="alice")

        assert argv == ["su", "-", "alice", "-c", "minikube start --memory=4g"]


class TestRun:
    """Tests for mutating commands."""

    def test_run_success(self, mock_sh):
        """Test a successful command is captured and recorded."""
        mock_sh.Command.return_value.return_value = MagicMock(exit_code=0, stdout=b"done\n", stderr=b"")
        runner = CommandRunner()

        result = runner.run("apt-get", "update")

        mock_sh.Command.assert_called_once_with("apt-get")
        mock_sh.Command.return_value.assert_called_once_with("update", _in=None, _return_cmd=True)
        assert result == CommandResult("apt-get update", 0, "done\n", "")
        assert runner.history == [result]

    def test_run_failure_raises(self, mock_sh):
        """Test non-zero exit raises StepExecutionError carrying the exit code."""
        mock_sh.Command.return_value.side_effect = sh.ErrorReturnCode_100(
            "apt-get install -y nope", b"", b"E: Unable to locate package nope")
        runner = CommandRunner()

        with pytest.raises(StepExecutionError) as excinfo:
            runner.run("apt-get", "install", "-y", "nope")

        assert excinfo.value.exit_code == 100
        assert "Unable to locate package" in excinfo.value.stderr
        assert runner.history[0].exit_code == 100

    def test_run_failure_without_check(self, mock_sh):
        """Test check=False returns the failed result instead of raising."""
        mock_sh.Command.return_value.side_effect = sh.ErrorReturnCode_1("swapoff -a", b"", b"")
        runner = CommandRunner()

        result = runner.run("swapoff", "-a", check=False)

        assert result.exit_code == 1
        assert not result.ok

    def test_missing_binary(self, mock_sh):
        """Test a missing binary is reported as exit code 127."""
        mock_sh.Command.side_effect = sh.CommandNotFound("kubeadm")
        runner = CommandRunner()

        with pytest.raises(StepExecutionError) as excinfo:
            runner.run("kubeadm", "init")

        assert excinfo.value.exit_code == 127
        assert "command not found" in excinfo.value.stderr

    def test_input_is_passed_to_stdin(self, mock_sh):
        mock_sh.Command.return_value.return_value = MagicMock(exit_code=0, stdout=b"", stderr=b"")
        runner = CommandRunner()

        runner.run("tee", "/tmp/x", input="hello")

        mock_sh.Command.return_value.assert_called_once_with("/tmp/x", _in="hello", _return_cmd=True)


class TestReadOnly:
    """Tests for the read-only primitives guards rely on."""

    def test_query_is_not_recorded(self, mock_sh):
        mock_sh.Command.return_value.return_value = MagicMock(exit_code=0, stdout=b"ii", stderr=b"")
        runner = CommandRunner()

        assert runner.succeeds("dpkg", "-s", "curl") is True
        assert runner.history == []

    def test_succeeds_never_raises(self, mock_sh):
        mock_sh.Command.return_value.side_effect = sh.ErrorReturnCode_3("systemctl is-active kubelet", b"", b"")

        assert CommandRunner().succeeds("systemctl", "is-active", "kubelet") is False

    def test_output_empty_on_failure(self, mock_sh):
        mock_sh.Command.return_value.side_effect = sh.ErrorReturnCode_1("kubectl get nodes", b"partial", b"refused")

        assert CommandRunner().output("kubectl", "get", "nodes") == ""

    def test_read_file(self, tmp_path):
        target = tmp_path / "k8s.conf"
        target.write_text("overlay\n")
        runner = CommandRunner()

        assert runner.read_file(target) == "overlay\n"
        assert runner.read_file(tmp_path / "missing") is None

    @patch('kubestrap.runner.command_exists', return_value=True)
    def test_which(self, mock_exists):
        assert CommandRunner().which("docker") is True
        mock_exists.assert_called_once_with("docker")


class TestWriteFile:
    """Tests for file writes."""

    def test_write_creates_parents(self, tmp_path):
        target = tmp_path / "etc" / "sysctl.d" / "k8s.conf"
        runner = CommandRunner()

        result = runner.write_file(target, "net.ipv4.ip_forward = 1\n", mode=0o644)

        assert target.read_text() == "net.ipv4.ip_forward = 1\n"
        assert oct(target.stat().st_mode & 0o777) == "0o644"
        assert result.ok
        assert runner.history == [result]

    def test_write_failure_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        runner = CommandRunner()

        with pytest.raises(StepExecutionError, match="Could not write"):
            runner.write_file(blocker / "child.conf", "x")

        assert runner.history[-1].exit_code == 1


class TestFetch:
    """Tests for downloads."""

    def test_fetch_with_mode(self, mock_sh):
        mock_sh.Command.return_value.return_value = MagicMock(exit_code=0, stdout=b"", stderr=b"")
        runner = CommandRunner()

        runner.fetch("https://example.com/kubectl", "/usr/local/bin/kubectl", mode=0o755)

        commands = [r.command for r in runner.history]
        assert commands == [
            "curl -fsSL -o /usr/local/bin/kubectl https://example.com/kubectl",
            "chmod 755 /usr/local/bin/kubectl",
        ]

    def test_fetch_failure_is_network_error(self, mock_sh):
        mock_sh.Command.return_value.side_effect = sh.ErrorReturnCode_22(
            "curl", b"", b"curl: (22) The requested URL returned error: 404")
        runner = CommandRunner()

        with pytest.raises(NetworkFetchError) as excinfo:
            runner.fetch("https://example.com/missing", "/tmp/missing")

        assert isinstance(excinfo.value, StepExecutionError)
        assert excinfo.value.exit_code == 22
