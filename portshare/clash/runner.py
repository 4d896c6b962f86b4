"""Running external commands and collecting their combined output."""

from __future__ import annotations

import subprocess
import sys

# Console programs started from a GUI process should not flash a window.
_CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0) if sys.platform == "win32" else 0


class CommandRunner:
    """Starts programs and returns what they wrote to stdout and stderr."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, name: str, *args: str) -> bytes:
        """Run ``name`` with ``args``; raise CalledProcessError on a non-zero exit."""
        completed = subprocess.run(
            [name, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=self.timeout,
            creationflags=_CREATION_FLAGS,
            check=False,
        )
        if completed.returncode != 0:
            raise subprocess.CalledProcessError(
                completed.returncode, completed.args, output=completed.stdout
            )
        return completed.stdout