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


"""Project distribution to remote hosts (git or archive streaming) and file pushes."""

from __future__ import annotations

import tempfile
from collections.abc import Callable, Iterable
from pathlib import Path

import sh
from rich.panel import Panel

from cluster_bootstrap import console
from cluster_bootstrap.config import ClusterSettings, NodeDescriptor, SyncStrategy
from cluster_bootstrap.constants import ARCHIVE_EXCLUDES, LAUNCHER_SCRIPT, SETUP_FILES
from cluster_bootstrap.remote import (
    RemoteRequest,
    copy_to_remote,
    mark_executable,
    run_remote,
    stream_archive,
)

RESOLVE_REPO_DIR_SCRIPT = """\
set -euo pipefail
project_name="${1:?project_name required}"
remote_repo_dir="${2:-}"

if [[ -n "${remote_repo_dir}" ]]; then
  printf "%s" "${remote_repo_dir}"
else
  printf "%s" "${HOME}/${project_name}"
fi
"""

GIT_PREPARE_SCRIPT = """\
set -euo pipefail
repo_dir="${1:?repo_dir required}"
repo_url="${2:?repo_url required}"

if ! command -v git >/dev/null 2>&1; then
  echo "git not found on $(hostname), installing..."
  sudo apt-get update
  sudo apt-get install -y git
fi

mkdir -p "$(dirname "${repo_dir}")"

if [[ ! -d "${repo_dir}/.git" ]]; then
  rm -rf "${repo_dir}"
  git clone "${repo_url}" "${repo_dir}"
fi

cd "${repo_dir}"
git fetch origin --prune
"""

GIT_BRANCH_EXISTS_SCRIPT = """\
set -euo pipefail
cd "${1:?repo_dir required}"
git ls-remote --exit-code --heads origin "${2:?branch required}" >/dev/null 2>&1
"""

GIT_CHECKOUT_SCRIPT = """\
set -euo pipefail
repo_dir="${1:?repo_dir required}"
branch="${2:?branch required}"
cd "${repo_dir}"
git checkout "${branch}"
git pull --ff-only origin "${branch}"
"""


# ============================================================================
# Remote path and source resolution
# ============================================================================

def resolve_remote_repo_dir(node: NodeDescriptor, cfg: ClusterSettings) -> str:
    """Resolve the project directory on a remote host.

    Args:
        node: Host to query.
        cfg: Coordinator configuration with project name and override path.

    Returns:
        Absolute project path as seen by the remote user.

    Raises:
        RuntimeError: If the remote host returns an empty path.
    """
    result = run_remote(RemoteRequest(
        node.target, RESOLVE_REPO_DIR_SCRIPT,
        (cfg.project_name, cfg.remote_repo_dir or ""),
        echo=False,
    ))
    repo_dir = result.stdout.strip()
    if not repo_dir:
        raise RuntimeError(f"Could not resolve the project directory on {node.target}")
    return repo_dir


def resolve_source_ref(cfg: ClusterSettings) -> tuple[str, str]:
    """Resolve repository URL and branch for the git strategy.

    Unset values fall back to the local checkout's origin URL and current branch.

    Args:
        cfg: Coordinator configuration.

    Returns:
        Tuple of (repo_url, branch).
    """
    git = sh.git.bake("-C", str(cfg.source_dir))
    repo_url = cfg.repo_url or str(git("remote", "get-url", "origin")).strip()
    branch = cfg.branch or str(git("rev-parse", "--abbrev-ref", "HEAD")).strip()
    return repo_url, branch


# ============================================================================
# Sync strategies
# ============================================================================

def sync_git(node: NodeDescriptor, repo_dir: str, repo_url: str, branch: str) -> bool:
    """Clone or fast-forward the project on a remote host.

    Args:
        node: Target host.
        repo_dir: Remote working copy path.
        repo_url: Repository to clone from.
        branch: Branch to check out and fast-forward.

    Returns:
        True if the branch was checked out, False if it does not exist upstream
        and the current branch was left untouched.
    """
    console.print(f"[yellow]\u2139\ufe0f  Syncing {repo_url} ({branch}) to {node.target}:{repo_dir}[/yellow]")
    run_remote(RemoteRequest(node.target, GIT_PREPARE_SCRIPT, (repo_dir, repo_url)))

    exists = run_remote(
        RemoteRequest(node.target, GIT_BRANCH_EXISTS_SCRIPT, (repo_dir, branch), echo=False),
        check=False,
    )
    if not exists.ok:
        console.print(
            f"[yellow]\u26a0\ufe0f  WARNING: branch '{branch}' not found on origin, "
            "keeping current branch.[/yellow]"
        )
        return False

    run_remote(RemoteRequest(node.target, GIT_CHECKOUT_SCRIPT, (repo_dir, branch)))
    return True


def sync_archive(node: NodeDescriptor, repo_dir: str, source_dir: Path) -> None:
    """Stream the local project tree into the remote project directory.

    Args:
        node: Target host.
        repo_dir: Remote extraction directory.
        source_dir: Local project checkout.

    Raises:
        RuntimeError: If source_dir is not a project checkout.
    """
    if not (source_dir / LAUNCHER_SCRIPT).is_file():
        raise RuntimeError(
            f"{source_dir} is not a project checkout (no {LAUNCHER_SCRIPT}). "
            "Set SOURCE_DIR or run the launcher from the checkout."
        )
    console.print(f"[yellow]\u2139\ufe0f  Streaming {source_dir} to {node.target}:{repo_dir}[/yellow]")
    stream_archive(node.target, source_dir, repo_dir, ARCHIVE_EXCLUDES)


# ============================================================================
# File pushes
# ============================================================================

def push_env_file(node: NodeDescriptor, repo_dir: str, env_file: Path | None) -> bool:
    """Copy the local override file to ``<repo_dir>/.env``.

    Args:
        node: Target host.
        repo_dir: Remote project directory.
        env_file: Local override file, or None.

    Returns:
        True if the file was pushed, False if there was nothing to push.
    """
    if env_file is None or not env_file.is_file():
        console.print(f"[yellow]   No local .env found, skip env push to {node.target}[/yellow]")
        return False
    console.print(f"[yellow]\u2139\ufe0f  Pushing .env to {node.target}:{repo_dir}/.env[/yellow]")
    copy_to_remote(node.target, env_file, f"{repo_dir}/.env")
    return True


def push_file_list(
    node: NodeDescriptor,
    repo_dir: str,
    rel_paths: Iterable[str],
    source_dir: Path,
    transform: Callable[[str], str] | None = None,
) -> list[str]:
    """Push individual project files, skipping those missing locally.

    Args:
        node: Target host.
        repo_dir: Remote project directory.
        rel_paths: File paths relative to the project root.
        source_dir: Local project tree.
        transform: Optional text rewrite applied before the copy.

    Returns:
        Relative paths that were pushed.
    """
    pushed: list[str] = []
    for rel in rel_paths:
        src = source_dir / rel
        if not src.is_file():
            continue
        dest = f"{repo_dir}/{rel}"
        if transform is None:
            copy_to_remote(node.target, src, dest)
        else:
            with tempfile.TemporaryDirectory() as tmp:
                staged = Path(tmp) / src.name
                staged.write_text(transform(src.read_text()))
                staged.chmod(src.stat().st_mode)
                copy_to_remote(node.target, staged, dest)
        pushed.append(rel)
    return pushed


# ============================================================================
# Public entry point
# ============================================================================

def prepare_node(
    node: NodeDescriptor,
    repo_dir: str,
    cfg: ClusterSettings,
    env_file: Path | None,
    source_ref: tuple[str, str] | None = None,
) -> None:
    """Bring one host's project copy and override file up to date.

    Args:
        node: Target host.
        repo_dir: Remote project directory.
        cfg: Coordinator configuration selecting the sync strategy.
        env_file: Local override file to push, or None.
        source_ref: (repo_url, branch) for the git strategy.
    """
    console.print(Panel.fit(f"Preparing {node.role.value} ({node.target}:{repo_dir})", style="bold blue"))
    if cfg.sync_strategy is SyncStrategy.GIT:
        repo_url, branch = source_ref or resolve_source_ref(cfg)
        sync_git(node, repo_dir, repo_url, branch)
    else:
        sync_archive(node, repo_dir, cfg.source_dir)
    push_env_file(node, repo_dir, env_file)
    mark_executable(node.target, repo_dir, SETUP_FILES)
    console.print(f"[green]\u2705 {node.target} is ready[/green]")
