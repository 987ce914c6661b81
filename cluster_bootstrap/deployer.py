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


"""Post-bootstrap TopFull deploy on master and loadgen hosts."""

from __future__ import annotations

import re
from functools import partial

from rich.panel import Panel

from cluster_bootstrap import console
from cluster_bootstrap.config import ClusterSettings, ControllerMode, Role
from cluster_bootstrap.constants import (
    APP_MANIFEST,
    CONTROLLER_SCRIPTS,
    DEFAULT_CONTROLLER_MODE,
    LOADGEN_RUNTIME_FILES,
    MASTER_RUNTIME_FILES,
    METRICS_MANIFEST,
    PROXY_PORT,
    REL_DEPLOYMENTS_DIR,
    REL_TOPFULL_LOADGEN,
    REL_TOPFULL_MASTER,
    REL_TOPFULL_SRC,
    SESSION_CONTROLLER,
    SESSION_LOADGEN,
    SESSION_METRICS,
    SESSION_PROXY,
)
from cluster_bootstrap.distributor import push_file_list
from cluster_bootstrap.remote import RemoteRequest, run_remote

ENSURE_TOOLS_SNIPPET = """\
if ! command -v pip3 >/dev/null 2>&1; then
  sudo apt-get update
  sudo apt-get install -y python3-pip
fi
if ! command -v tmux >/dev/null 2>&1; then
  sudo apt-get update
  sudo apt-get install -y tmux
fi
"""

DEPLOY_MASTER_SCRIPT = f"""\
set -euo pipefail
repo_dir="${{1:?repo_dir required}}"
controller_script="${{2:?controller_script required}}"
src_dir="${{repo_dir}}/{REL_TOPFULL_SRC}"
deploy_dir="${{repo_dir}}/{REL_DEPLOYMENTS_DIR}"

{ENSURE_TOOLS_SNIPPET}
cd "${{repo_dir}}/{REL_TOPFULL_MASTER}"
pip3 install -r requirements.txt

kubectl apply -f "${{deploy_dir}}/{APP_MANIFEST}"
kubectl apply -f "${{deploy_dir}}/{METRICS_MANIFEST}"
python3 "${{src_dir}}/instance_scaling.py"

tmux kill-session -t {SESSION_PROXY} >/dev/null 2>&1 || true
tmux kill-session -t {SESSION_CONTROLLER} >/dev/null 2>&1 || true
tmux kill-session -t {SESSION_METRICS} >/dev/null 2>&1 || true

tmux new-session -d -s {SESSION_PROXY} "cd '${{src_dir}}/proxy' && go run proxy_online_boutique.go"
tmux new-session -d -s {SESSION_CONTROLLER} "cd '${{src_dir}}' && python3 ${{controller_script}}"
tmux new-session -d -s {SESSION_METRICS} "cd '${{src_dir}}' && python3 metric_collector.py"
"""

DEPLOY_LOADGEN_SCRIPT = f"""\
set -euo pipefail
repo_dir="${{1:?repo_dir required}}"
loadgen_dir="${{repo_dir}}/{REL_TOPFULL_LOADGEN}"

{ENSURE_TOOLS_SNIPPET}
cd "${{loadgen_dir}}"
pip3 install -r requirements.txt
chmod +x online_boutique_create.sh online_boutique_create2.sh

tmux kill-session -t {SESSION_LOADGEN} >/dev/null 2>&1 || true
tmux new-session -d -s {SESSION_LOADGEN} "cd '${{loadgen_dir}}' && ./online_boutique_create.sh"
"""


def controller_script(mode: ControllerMode | str) -> str:
    """Controller entry script for a controller mode; unknown modes use mimd."""
    value = mode.value if isinstance(mode, ControllerMode) else str(mode)
    return CONTROLLER_SCRIPTS.get(value, CONTROLLER_SCRIPTS[DEFAULT_CONTROLLER_MODE])


def rewrite_target_hosts(text: str, master_ip: str, frontend_nodeport: int) -> str:
    """Point load-generator targets at the master.

    Rewrites ``--host=http://<ip>:<frontend_nodeport>`` and
    ``http://<ip>:<proxy port>`` occurrences. ``--host`` targets on any other
    port are left alone and reported as a NodePort mismatch.

    Args:
        text: File contents.
        master_ip: Address of the control-plane host.
        frontend_nodeport: NodePort of the frontend service.

    Returns:
        Rewritten contents.
    """
    stale_ports = {
        port for port in re.findall(r"--host=http://[0-9.]+:(\d+)", text) if int(port) != frontend_nodeport
    }
    if stale_ports:
        console.print(
            f"[yellow]\u26a0\ufe0f  --host port {','.join(sorted(stale_ports))} left unchanged "
            f"(FRONTEND_NODEPORT={frontend_nodeport})[/yellow]"
        )
    text = re.sub(
        rf"--host=http://[0-9.]+:{frontend_nodeport}\b",
        f"--host=http://{master_ip}:{frontend_nodeport}",
        text,
    )
    return re.sub(rf"http://[0-9.]+:{PROXY_PORT}\b", f"http://{master_ip}:{PROXY_PORT}", text)


def run_stack_deploy(cfg: ClusterSettings, repo_dirs: dict[Role, str]) -> None:
    """Push runtime files and start the TopFull stack.

    Args:
        cfg: Coordinator configuration (controller mode, master IP, skip flags).
        repo_dirs: Remote project directory per role.

    Raises:
        RuntimeError: If MASTER_IP is not configured.
    """
    if not cfg.master_ip:
        raise RuntimeError("MASTER_IP is empty. Set it in .env for loadgen host/proxy rewrite.")

    console.print(Panel.fit("Step 3/3: push runtime files + deploy TopFull", style="bold blue"))
    master = cfg.node(Role.MASTER)
    push_file_list(master, repo_dirs[Role.MASTER], MASTER_RUNTIME_FILES, cfg.source_dir)

    deploy_loadgen = not cfg.skip_loadgen_prep
    if deploy_loadgen:
        loadgen = cfg.node(Role.LOADGEN)
        push_file_list(
            loadgen, repo_dirs[Role.LOADGEN], LOADGEN_RUNTIME_FILES, cfg.source_dir,
            transform=partial(rewrite_target_hosts, master_ip=cfg.master_ip,
                              frontend_nodeport=cfg.frontend_nodeport),
        )

    script = controller_script(cfg.controller_mode)
    console.print(f"[yellow]\u2139\ufe0f  Deploying TopFull stack on {master.target} (controller: {script})[/yellow]")
    run_remote(RemoteRequest(master.target, DEPLOY_MASTER_SCRIPT, (repo_dirs[Role.MASTER], script)))

    if deploy_loadgen:
        console.print(f"[yellow]\u2139\ufe0f  Deploying loadgen on {loadgen.target}[/yellow]")
        run_remote(RemoteRequest(loadgen.target, DEPLOY_LOADGEN_SCRIPT, (repo_dirs[Role.LOADGEN],)))

    sessions = ", ".join([SESSION_PROXY, SESSION_CONTROLLER, SESSION_METRICS, SESSION_LOADGEN])
    console.print(f"[green]\u2705 TopFull deploy started. Check tmux sessions: {sessions}[/green]")
