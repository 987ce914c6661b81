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


"""Cluster bootstrap coordination across master, worker, and loadgen hosts."""

from __future__ import annotations

import tempfile
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from rich.panel import Panel

from cluster_bootstrap import console
from cluster_bootstrap.config import ClusterSettings, NodeDescriptor, Role, SyncStrategy, display_config
from cluster_bootstrap.constants import JOIN_MARKER, LAUNCHER_SCRIPT
from cluster_bootstrap.deployer import run_stack_deploy
from cluster_bootstrap.distributor import (
    prepare_node,
    resolve_remote_repo_dir,
    resolve_source_ref,
)
from cluster_bootstrap.installer import is_join_command
from cluster_bootstrap.remote import RemoteRequest, run_remote

RUN_LAUNCHER_SCRIPT = f"""\
set -euo pipefail
repo_dir="${{1:?repo_dir required}}"
shift
cd "${{repo_dir}}"
./{LAUNCHER_SCRIPT} "$@"
"""


class JoinCommandNotFoundError(RuntimeError):
    """The master step finished without a usable join command."""


def extract_join_command(output: str) -> str:
    """Extract the join command from captured master output.

    Only the last marker line counts; earlier ones are stale.

    Args:
        output: Full stdout of the master setup step.

    Returns:
        The join command following the marker.

    Raises:
        JoinCommandNotFoundError: If no marker is present or the last one is
            empty or malformed.
    """
    prefix = f"{JOIN_MARKER}="
    matches = [line[len(prefix):].strip() for line in output.splitlines() if line.startswith(prefix)]
    if not matches or not matches[-1]:
        raise JoinCommandNotFoundError("Failed to capture join command from master setup output.")
    join_cmd = matches[-1]
    if not is_join_command(join_cmd):
        raise JoinCommandNotFoundError(f"Captured join command is malformed: {join_cmd}")
    return join_cmd


def _prepare_concurrently(nodes: list[NodeDescriptor], prepare: Callable[[NodeDescriptor], None]) -> None:
    """Prepare all hosts at once, then replay each host's transcript in setup order.

    Output printed while a host is prepared is held per host so the transcripts of
    concurrent ssh sessions do not interleave. Transcripts of hosts that finished
    are shown even when another host failed.

    Args:
        nodes: Hosts to prepare, in setup order.
        prepare: Preparation step for one host.

    Raises:
        Exception: The failure of the first host, in setup order, that failed.
    """
    if not nodes:
        return

    node_output: dict[Role, str] = {}

    def _transcript(node: NodeDescriptor) -> str:
        with console.buffered() as buf:
            try:
                prepare(node)
            finally:
                # Keep what the host printed before it failed.
                node_output[node.role] = buf.getvalue()
        return node_output[node.role]

    with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
        pending = [(node, pool.submit(_transcript, node)) for node in nodes]
    failure: BaseException | None = None
    for node, future in pending:
        console.print(node_output.get(node.role, ""), end="")
        if failure is None:
            failure = future.exception()
    if failure is not None:
        raise failure


def cluster_nodes(cfg: ClusterSettings) -> list[NodeDescriptor]:
    """Hosts that take part in distribution, in setup order."""
    roles = [Role.MASTER, Role.WORKER]
    if not cfg.skip_loadgen_prep:
        roles.append(Role.LOADGEN)
    return [cfg.node(role) for role in roles]


# ============================================================================
# Phases
# ============================================================================

def run_distribution(cfg: ClusterSettings, env_file: Path | None) -> dict[Role, str]:
    """Resolve project paths and bring every host's copy up to date.

    Args:
        cfg: Coordinator configuration.
        env_file: Local override file to push, or None.

    Returns:
        Remote project directory per role, for every prepared host.
    """
    nodes = cluster_nodes(cfg)
    repo_dirs = {node.role: resolve_remote_repo_dir(node, cfg) for node in nodes}

    console.print(Panel.fit("Step 0/2: prepare repo + .env on nodes", style="bold blue"))
    source_ref = resolve_source_ref(cfg) if cfg.sync_strategy is SyncStrategy.GIT else None
    if cfg.skip_loadgen_prep:
        console.print("[yellow]   SKIP_LOADGEN_PREP=1, skip loadgen preparation[/yellow]")

    def _prepare(node: NodeDescriptor) -> None:
        prepare_node(node, repo_dirs[node.role], cfg, env_file, source_ref)

    if cfg.parallel_distribution:
        _prepare_concurrently(nodes, _prepare)
    else:
        for node in nodes:
            _prepare(node)
    return repo_dirs


def run_master_setup(node: NodeDescriptor, repo_dir: str) -> str:
    """Run master setup on the control-plane host and capture its join command.

    Args:
        node: Master host.
        repo_dir: Remote project directory.

    Returns:
        The join command printed by the master step.

    Raises:
        RemoteCommandError: If master setup fails.
        JoinCommandNotFoundError: If no join command was printed.
    """
    console.print(Panel.fit(f"Step 1/2: setup master on {node.target}", style="bold blue"))
    with tempfile.NamedTemporaryFile("w+", prefix="master-setup-", suffix=".log") as log_file:
        run_remote(RemoteRequest(
            node.target, RUN_LAUNCHER_SCRIPT,
            (repo_dir, "node", "setup", Role.MASTER.value),
            capture_file=Path(log_file.name),
        ))
        output = Path(log_file.name).read_text()
    return extract_join_command(output)


def run_worker_setup(node: NodeDescriptor, repo_dir: str, join_cmd: str) -> None:
    """Join the worker host using the captured join command.

    Args:
        node: Worker host.
        repo_dir: Remote project directory.
        join_cmd: Join command, passed as a single positional argument.
    """
    console.print(Panel.fit(f"Step 2/2: setup worker on {node.target}", style="bold blue"))
    run_remote(RemoteRequest(
        node.target, RUN_LAUNCHER_SCRIPT,
        (repo_dir, "node", "setup", Role.WORKER.value, join_cmd),
    ))


def run_bootstrap(cfg: ClusterSettings, env_file: Path | None) -> None:
    """Run the full coordinated flow: distribute, master, worker, optional deploy.

    Args:
        cfg: Coordinator configuration.
        env_file: Local override file to push, or None.
    """
    display_config(cfg)
    master = cfg.node(Role.MASTER)
    worker = cfg.node(Role.WORKER)
    console.print(f"[yellow]\u2139\ufe0f  Master: {master.target}, Worker: {worker.target}, "
                  f"Loadgen: {cfg.node(Role.LOADGEN).target}[/yellow]")

    repo_dirs = run_distribution(cfg, env_file)

    join_cmd = run_master_setup(master, repo_dirs[Role.MASTER])
    run_worker_setup(worker, repo_dirs[Role.WORKER], join_cmd)
    console.print("[green]\u2705 Done. Cluster bootstrap flow completed.[/green]")

    if cfg.run_topfull_deploy:
        run_stack_deploy(cfg, repo_dirs)
