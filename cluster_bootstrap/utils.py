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


"""Utility functions for command checks, privileged writes, and kubectl."""

from __future__ import annotations

import subprocess
from pathlib import Path

import sh

from cluster_bootstrap.constants import ADMIN_CONF


def command_exists(cmd: str) -> bool:
    """Return whether a command is on the system PATH.

    Args:
        cmd: Name of the CLI command to check.
    """
    try:
        sh.which(cmd)
    except sh.ErrorReturnCode:
        return False
    return True


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        RuntimeError: If the command is not found.
    """
    if not command_exists(cmd):
        raise RuntimeError(f"Missing command: {cmd}. Please install it first.")


def sudo_write(path: Path, content: str | bytes) -> None:
    """Write a root-owned file through ``sudo tee``.

    Args:
        path: Destination file.
        content: File contents.
    """
    sh.sudo("tee", str(path), _in=content, _out="/dev/null")


def kubectl_admin(*args: str, **kwargs):
    """Run kubectl as root against the kubeadm admin kubeconfig.

    Args:
        *args: kubectl arguments.
        **kwargs: Special ``sh`` keyword arguments (``_in``, ``_out`` ...).

    Returns:
        The ``sh`` RunningCommand.
    """
    return sh.sudo("kubectl", "--kubeconfig", str(ADMIN_CONF), *args, **kwargs)


def run_kubectl(args: list[str], timeout: int = 30) -> tuple[bool, str, str]:
    """Run a read-only kubectl listing for the cluster status report.

    A failing listing is reported, not raised, so one unreachable resource does
    not hide the rest of the report.

    Args:
        args: kubectl arguments (e.g. ``["get", "pods", "-A"]``).
        timeout: Maximum seconds to wait for the command to complete.

    Returns:
        Tuple of (success, stdout, stderr).
    """
    try:
        result = subprocess.run(
            ["kubectl", *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode == 0, result.stdout, result.stderr
    except (subprocess.SubprocessError, OSError) as exc:
        return False, "", str(exc)
