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


"""Cluster subcommands (coordinate, distribute), run from the operator machine."""

from __future__ import annotations

import typer

from cluster_bootstrap.config import (
    ClusterSettings,
    ControllerMode,
    SyncStrategy,
    display_config,
    load_settings,
)
from cluster_bootstrap.coordinator import run_bootstrap, run_distribution

app = typer.Typer(help="Coordinate the multi-node bootstrap over SSH.")


def _cluster_settings(
    ctx: typer.Context,
    sync_strategy: SyncStrategy | None = None,
    parallel: bool | None = None,
    **updates,
) -> ClusterSettings:
    cfg = load_settings(ClusterSettings, ctx.obj["env_file"])
    if sync_strategy is not None:
        updates["sync_strategy"] = sync_strategy
    if parallel is not None:
        updates["parallel_distribution"] = parallel
    updates = {key: value for key, value in updates.items() if value is not None}
    if updates:
        cfg = cfg.model_copy(update=updates)
    return cfg


@app.command()
def coordinate(
    ctx: typer.Context,
    sync_strategy: SyncStrategy | None = typer.Option(
        None, "--sync-strategy", help="Project transfer strategy (overrides SYNC_STRATEGY)"),
    parallel: bool | None = typer.Option(
        None, "--parallel/--sequential", help="Distribute to hosts concurrently"),
    deploy: bool | None = typer.Option(
        None, "--deploy/--no-deploy", help="Run the TopFull deploy after bootstrap"),
    controller_mode: ControllerMode | None = typer.Option(
        None, "--controller-mode", help="Controller variant (overrides CONTROLLER_MODE)"),
    skip_loadgen: bool | None = typer.Option(
        None, "--skip-loadgen/--with-loadgen", help="Skip loadgen preparation and deploy"),
) -> None:
    """Distribute the project, set up the master, then join the worker."""
    cfg = _cluster_settings(
        ctx, sync_strategy, parallel,
        run_topfull_deploy=deploy,
        controller_mode=controller_mode,
        skip_loadgen_prep=skip_loadgen,
    )
    run_bootstrap(cfg, ctx.obj["env_file"])


@app.command()
def distribute(
    ctx: typer.Context,
    sync_strategy: SyncStrategy | None = typer.Option(
        None, "--sync-strategy", help="Project transfer strategy (overrides SYNC_STRATEGY)"),
    parallel: bool | None = typer.Option(
        None, "--parallel/--sequential", help="Distribute to hosts concurrently"),
) -> None:
    """Only bring each host's project copy and .env up to date."""
    cfg = _cluster_settings(ctx, sync_strategy, parallel)
    display_config(cfg)
    run_distribution(cfg, ctx.obj["env_file"])
