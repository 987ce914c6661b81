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


"""Deploy subcommands (stack, stage2)."""

from __future__ import annotations

import typer

from cluster_bootstrap.config import ClusterSettings, DeploySettings, Role, load_settings
from cluster_bootstrap.coordinator import cluster_nodes
from cluster_bootstrap.deployer import run_stack_deploy
from cluster_bootstrap.distributor import resolve_remote_repo_dir
from cluster_bootstrap.workloads import run_stage2

app = typer.Typer(help="Deploy workloads onto a bootstrapped cluster.")


@app.command()
def stack(ctx: typer.Context) -> None:
    """Push runtime files and start the TopFull stack on master and loadgen."""
    cfg = load_settings(ClusterSettings, ctx.obj["env_file"])
    repo_dirs = {
        node.role: resolve_remote_repo_dir(node, cfg)
        for node in cluster_nodes(cfg)
        if node.role is not Role.WORKER
    }
    run_stack_deploy(cfg, repo_dirs)


@app.command()
def stage2(
    ctx: typer.Context,
    master_ip: str | None = typer.Option(None, "--master-ip", help="Frontend probe address (overrides MASTER_IP)"),
) -> None:
    """Apply Online Boutique and metrics-server on the master, then verify."""
    settings = load_settings(DeploySettings, ctx.obj["env_file"])
    if master_ip is not None:
        settings = settings.model_copy(update={"master_ip": master_ip})
    run_stage2(settings)
