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


"""Node subcommands (setup, master, worker), run on the node itself."""

from __future__ import annotations

import typer
from rich.markup import escape

from cluster_bootstrap import console
from cluster_bootstrap.config import NodeSettings, Role, load_settings
from cluster_bootstrap.installer import MISSING_JOIN_MESSAGE, LocalHostProbe, NodeInstaller

app = typer.Typer(help="Prepare this machine as a master or worker node.")

SETUP_USAGE = "Usage: cluster-bootstrap node setup master|worker [join_command_for_worker]"


def _install(role: Role, settings: NodeSettings, join_command: str | None = None) -> None:
    probe = LocalHostProbe()
    if role is Role.WORKER and not (join_command or "").strip() and not probe.worker_joined():
        console.print(f"[red]\u274c {MISSING_JOIN_MESSAGE}[/red]")
        raise typer.Exit(1)
    NodeInstaller(role, settings, probe=probe, join_command=join_command).run()


@app.command()
def setup(
    ctx: typer.Context,
    role: str | None = typer.Argument(None, help="master or worker"),
    join_command: str | None = typer.Argument(
        None, help="Worker join command (falls back to KUBEADM_JOIN_CMD)"),
) -> None:
    """Install the runtime and Kubernetes packages, then apply a role."""
    if not role:
        console.print(f"[red]\u274c {escape(SETUP_USAGE)}[/red]")
        raise typer.Exit(1)
    if role not in (Role.MASTER.value, Role.WORKER.value):
        console.print("[red]\u274c Role must be 'master' or 'worker'[/red]")
        raise typer.Exit(1)

    settings = load_settings(NodeSettings, ctx.obj["env_file"])
    _install(Role(role), settings, join_command or settings.kubeadm_join_cmd)


@app.command()
def master(ctx: typer.Context) -> None:
    """One-command master setup."""
    _install(Role.MASTER, load_settings(NodeSettings, ctx.obj["env_file"]))


@app.command()
def worker(ctx: typer.Context) -> None:
    """One-command worker setup (JOIN_CMD_FIXED, else KUBEADM_JOIN_CMD)."""
    settings = load_settings(NodeSettings, ctx.obj["env_file"])
    _install(Role.WORKER, settings, settings.join_cmd_fixed or settings.kubeadm_join_cmd)
