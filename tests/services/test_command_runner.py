import subprocess

import pytest

from rdsupgrader.errors import UpgraderError
from rdsupgrader.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeProcess:
    def __init__(self, return_code=0, finished=False, ignores_terminate=False):
        self.pid = 4321
        self.return_code = return_code
        self.finished = finished
        self.ignores_terminate = ignores_terminate
        self.terminated = False
        self.killed = False

    def poll(self):
        return self.return_code if self.finished else None

    def wait(self, timeout=None):
        if self.ignores_terminate and not self.killed:
            raise subprocess.TimeoutExpired("child", timeout)
        self.finished = True
        return self.return_code

    def terminate(self):
        self.terminated = True

    def kill(self):
        self.killed = True


def test_spawn_redirects_output_to_file(tmp_path):
    captured = {}

    def fake_popen(cmd, **kwargs):
        captured["cmd"] = cmd
        captured["stdout"] = kwargs["stdout"].name
        captured["stderr"] = kwargs["stderr"]
        return FakeProcess()

    runner = CommandRunner(logger=DummyLogger(), popen=fake_popen)
    output_path = tmp_path / "child.out"

    process = runner.spawn(["python", "-m", "rdsupgrader"], str(output_path))

    assert process.pid == 4321
    assert captured["cmd"] == ["python", "-m", "rdsupgrader"]
    assert captured["stdout"] == str(output_path)
    assert captured["stderr"] == subprocess.STDOUT


def test_spawn_reports_missing_command(tmp_path):
    def fake_popen(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    runner = CommandRunner(logger=DummyLogger(), popen=fake_popen)

    with pytest.raises(UpgraderError, match="Required command not found"):
        runner.spawn(["missing-binary"], str(tmp_path / "child.out"))


def test_wait_returns_exit_code():
    runner = CommandRunner(logger=DummyLogger())

    assert runner.wait(FakeProcess(return_code=3)) == 3


def test_terminate_kills_processes_that_ignore_sigterm():
    runner = CommandRunner(logger=DummyLogger())
    process = FakeProcess(ignores_terminate=True)

    runner.terminate(process, grace_seconds=0)

    assert process.terminated
    assert process.killed


def test_terminate_skips_finished_processes():
    runner = CommandRunner(logger=DummyLogger())
    process = FakeProcess(finished=True)

    runner.terminate(process)

    assert not process.terminated
