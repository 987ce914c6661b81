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


"""
cli.py - kubeadm cluster bootstrap and TopFull deployment.

Subcommands:
    node      Per-node setup, run on the node (setup, master, worker)
    cluster   Multi-node coordination over SSH (coordinate, distribute)
    deploy    Workload deployment (stack, stage2)

Examples:
    # Bootstrap node0/node1/node2 from this machine
    cluster-bootstrap cluster coordinate

    # Same, then start the TopFull stack with the RL controller
    cluster-bootstrap cluster coordinate --deploy --controller-mode rl

    # On a worker, join with an explicit command
    cluster-bootstrap node setup worker "kubeadm join 10.10.1.1:6443 --token ... --discovery-token-ca-cert-hash ..."

    # On the master, deploy Online Boutique and verify the frontend
    cluster-bootstrap deploy stage2

For detailed usage information, run: cluster-bootstrap --help
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer

from cluster_bootstrap import console, logger
from cluster_bootstrap.commands import cluster_cmd, deploy_cmd, node_cmd
from cluster_bootstrap.constants import DEFAULT_ENV_FILE

app = typer.Typer(
    help="kubeadm cluster bootstrap and TopFull deployment over SSH.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    ctx: typer.Context,
    env_file: Path = typer.Option(
        DEFAULT_ENV_FILE, "--env-file", help="KEY=VALUE override file (takes precedence over the environment)"),
) -> None:
    """Initialize logging and the override file for all subcommands."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    ctx.obj = {"env_file": env_file}


app.add_typer(node_cmd.app, name="node")
app.add_typer(cluster_cmd.app, name="cluster")
app.add_typer(deploy_cmd.app, name="deploy")


def main() -> None:
    """Console-script entry point; a failed step exits with status 1."""
    try:
        app()
    except Exception as err:
        console.print(f"[red]\u274c {err}[/red]")
        logger.debug("command failed", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
