# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */


"""Remote command execution over ssh/scp.

Every remote step is a :class:`RemoteRequest`: a bash script body fed to
``bash -s`` on the target plus positional arguments. Arguments are quoted
individually, so a value containing spaces or shell metacharacters arrives on
the remote side as exactly one ``$N`` parameter.
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path

import sh

from cluster_bootstrap import console
from cluster_bootstrap.constants import SSH_OPTIONS

MKDIR_SCRIPT = """\
set -euo pipefail
mkdir -p "${1:?directory required}"
"""

CHMOD_EXEC_SCRIPT = """\
set -euo pipefail
dir="${1:?directory required}"
shift
cd "${dir}"
for f in "$@"; do
  if [[ -f "${f}" ]]; then
    chmod +x "${f}"
  fi
done
"""


@dataclass(frozen=True)
class RemoteRequest:
    """A script to run on one remote host.

    Attributes:
        target: SSH destination (``host`` or ``user@host``).
        script: Bash script body, read by the remote ``bash -s``.
        args: Positional parameters passed to the script.
        echo: Whether remote stdout is streamed to the console.
        capture_file: Optional file that receives a copy of remote stdout.
    """

    target: str
    script: str
    args: tuple[str, ...] = ()
    echo: bool = True
    capture_file: Path | None = None


@dataclass(frozen=True)
class RemoteResult:
    """Outcome of a remote script."""

    exit_code: int
    stdout: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteCommandError(RuntimeError):
    """A remote script exited non-zero."""

    def __init__(self, target: str, exit_code: int, stdout: str = "") -> None:
        super().__init__(f"Remote command on {target} failed with exit code {exit_code}")
        self.target = target
        self.exit_code = exit_code
        self.stdout = stdout


def build_remote_command(args: Iterable[str]) -> str:
    """Build the remote command line that runs a script from stdin.

    Args:
        args: Positional parameters for the script.

    Returns:
        ``bash -s -- <quoted args>`` ready for ssh.
    """
    return " ".join(["bash", "-s", "--", *(shlex.quote(str(arg)) for arg in args)])


def run_remote(request: RemoteRequest, check: bool = True) -> RemoteResult:
    """Run a script on a remote host and collect its stdout.

    Args:
        request: Remote step to execute.
        check: Whether a non-zero exit raises.

    Returns:
        Remote exit code and collected stdout.

    Raises:
        RemoteCommandError: If the remote script fails and ``check`` is set.
    """
    lines: list[str] = []
    # sh calls the callbacks on its own threads; bind the caller's console here.
    emit = console.out
    capture_ctx = open(request.capture_file, "a") if request.capture_file else nullcontext()

    with capture_ctx as capture:
        def _on_out(line: str) -> None:
            lines.append(line)
            if capture is not None:
                capture.write(line)
                capture.flush()
            if request.echo:
                emit(line.rstrip("\n"), highlight=False)

        def _on_err(line: str) -> None:
            emit(line.rstrip("\n"), style="dim", highlight=False)

        try:
            sh.ssh(
                *SSH_OPTIONS, request.target, build_remote_command(request.args),
                _in=request.script,
                _out=_on_out,
                _err=_on_err,
            )
            exit_code = 0
        except sh.ErrorReturnCode as err:
            exit_code = err.exit_code

    stdout = "".join(lines)
    if exit_code != 0 and check:
        raise RemoteCommandError(request.target, exit_code, stdout)
    return RemoteResult(exit_code=exit_code, stdout=stdout)


def ensure_remote_dir(target: str, remote_dir: str) -> None:
    """Create a directory on the remote host.

    Args:
        target: SSH destination.
        remote_dir: Directory to create.
    """
    run_remote(RemoteRequest(target, MKDIR_SCRIPT, (remote_dir,), echo=False))


def copy_to_remote(target: str, local_path: Path, remote_path: str) -> None:
    """Copy a single file to the remote host, creating its parent directory.

    Args:
        target: SSH destination.
        local_path: File to copy.
        remote_path: Absolute destination path on the remote host.
    """
    ensure_remote_dir(target, str(Path(remote_path).parent))
    sh.scp(*SSH_OPTIONS, str(local_path), f"{target}:{remote_path}")


def mark_executable(target: str, remote_dir: str, files: Iterable[str]) -> None:
    """chmod +x the given files under a remote directory, ignoring missing ones.

    Args:
        target: SSH destination.
        remote_dir: Directory the file names are relative to.
        files: Relative file names.
    """
    run_remote(RemoteRequest(target, CHMOD_EXEC_SCRIPT, (remote_dir, *files), echo=False))


def stream_archive(target: str, source_dir: Path, remote_dir: str, excludes: Iterable[str]) -> None:
    """Stream a tarball of a local tree straight into a remote directory.

    ``tar`` output is piped into ``ssh``; nothing is staged on either side.

    Args:
        target: SSH destination.
        source_dir: Local directory to archive.
        remote_dir: Remote extraction directory (created if missing).
        excludes: ``tar --exclude`` patterns.
    """
    exclude_args = [f"--exclude={pattern}" for pattern in excludes]
    tar = sh.tar("-czf", "-", *exclude_args, "-C", str(source_dir), ".", _piped=True)
    quoted = shlex.quote(remote_dir)
    sh.ssh(tar, *SSH_OPTIONS, target, f"mkdir -p {quoted} && tar -xzf - -C {quoted}")
