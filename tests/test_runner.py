import subprocess
import sys

import pytest

from portshare.clash.runner import CommandRunner


def test_run_returns_stdout():
    output = CommandRunner().run(sys.executable, "-c", "import sys; sys.stdout.write('out')")
    assert output == b"out"


def test_run_combines_stdout_and_stderr():
    script = (
        "import sys; sys.stdout.write('out'); sys.stdout.flush(); "
        "sys.stderr.write('err'); sys.stderr.flush()"
    )
    output = CommandRunner().run(sys.executable, "-c", script)
    assert b"out" in output
    assert b"err" in output


def test_run_raises_on_nonzero_exit_with_output():
    script = "import sys; sys.stdout.write('boom'); sys.exit(3)"
    with pytest.raises(subprocess.CalledProcessError) as info:
        CommandRunner().run(sys.executable, "-c", script)
    assert info.value.returncode == 3
    assert b"boom" in info.value.output


def test_run_missing_program_raises():
    with pytest.raises(OSError):
        CommandRunner().run("portshare-no-such-program-here")


def test_run_honours_timeout():
    runner = CommandRunner(timeout=0.5)
    with pytest.raises(subprocess.TimeoutExpired):
        runner.run(sys.executable, "-c", "import time; time.sleep(5)")