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


"""Stage-2 workload deploy and verification on the master."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import requests
import sh
from rich.panel import Panel

from cluster_bootstrap import console
from cluster_bootstrap.config import DeploySettings
from cluster_bootstrap.constants import (
    APP_MANIFEST,
    APP_SERVICES,
    METRICS_DEPLOYMENT,
    METRICS_MANIFEST,
    NS_DEFAULT,
    NS_KUBE_SYSTEM,
    SINGLE_WORKER_REPLICAS,
)
from cluster_bootstrap.utils import require_command, run_kubectl


@dataclass(frozen=True)
class Workload:
    """A deployment managed by the stage-2 deploy."""

    name: str
    namespace: str = NS_DEFAULT

    @property
    def ref(self) -> str:
        return f"deploy/{self.name}"


APP_WORKLOADS = tuple(Workload(name) for name in APP_SERVICES)
METRICS_WORKLOAD = Workload(METRICS_DEPLOYMENT, NS_KUBE_SYSTEM)


def detect_master_ip() -> str:
    """First address reported by ``hostname -I``."""
    addresses = str(sh.hostname("-I")).split()
    if not addresses:
        raise RuntimeError("Could not detect MASTER_IP from hostname -I. Set it in .env.")
    return addresses[0]


def apply_manifests(manifests: Iterable[Path]) -> None:
    for manifest in manifests:
        console.print(f"[yellow]\u2139\ufe0f  Applying {manifest.name}[/yellow]")
        console.out(str(sh.kubectl("apply", "-f", str(manifest))).rstrip(), highlight=False)


def scale_for_single_worker(workloads: Iterable[Workload], replicas: int = SINGLE_WORKER_REPLICAS) -> None:
    """Scale application deployments down to fit a single worker."""
    console.print(f"[yellow]\u2139\ufe0f  Scaling deployments for single-worker mode (all replicas={replicas})[/yellow]")
    for workload in workloads:
        sh.kubectl("scale", workload.ref, f"--replicas={replicas}", "-n", workload.namespace)


def wait_rollouts(workloads: Iterable[Workload], timeout_seconds: int) -> bool:
    """Wait for application rollouts, then for metrics-server.

    An application rollout timing out is fatal; metrics-server is not.

    Args:
        workloads: Application deployments to wait for.
        timeout_seconds: Deadline per rollout.

    Returns:
        Whether the metrics-server rollout completed.
    """
    console.print("[yellow]\u2139\ufe0f  Waiting for main deployments rollout[/yellow]")
    for workload in workloads:
        sh.kubectl("rollout", "status", workload.ref, "-n", workload.namespace, f"--timeout={timeout_seconds}s")

    console.print("[yellow]\u2139\ufe0f  Waiting for metrics-server rollout[/yellow]")
    try:
        sh.kubectl(
            "rollout", "status", METRICS_WORKLOAD.ref,
            "-n", METRICS_WORKLOAD.namespace, f"--timeout={timeout_seconds}s",
        )
    except sh.ErrorReturnCode:
        console.print("[yellow]\u26a0\ufe0f  metrics-server rollout did not complete, continuing[/yellow]")
        return False
    return True


def probe_frontend(url: str, timeout: float) -> bool:
    """Return whether the frontend answers with a success status."""
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException:
        return False
    return True


def verify(master_ip: str, frontend_nodeport: int, probe_timeout: float) -> bool:
    """List pods and the frontend service, then probe the frontend NodePort.

    Args:
        master_ip: Address of the master host.
        frontend_nodeport: Externally exposed frontend port.
        probe_timeout: HTTP timeout in seconds.

    Returns:
        Whether the frontend was reachable.
    """
    for title, args in (
        ("Pod status", ["get", "po", "-A", "-o", "wide"]),
        ("Frontend service", ["get", "svc", "frontend", "-n", NS_DEFAULT]),
    ):
        console.print(f"[yellow]\u2139\ufe0f  {title}[/yellow]")
        ok, stdout, stderr = run_kubectl(args)
        console.out(stdout.rstrip() if ok else stderr.rstrip(), highlight=False)

    frontend_url = f"http://{master_ip}:{frontend_nodeport}"
    console.print(f"[yellow]\u2139\ufe0f  Trying frontend NodePort: {frontend_url}[/yellow]")
    if probe_frontend(frontend_url, probe_timeout):
        console.print(f"[green]\u2705 Frontend reachable: {frontend_url}[/green]")
        return True
    console.print(
        f"[yellow]\u26a0\ufe0f  Frontend not reachable yet at {frontend_url} (may still be warming up).\n"
        f"   Retry with: curl -I {frontend_url}[/yellow]"
    )
    return False


def run_stage2(settings: DeploySettings) -> bool:
    """Apply the application and metrics manifests, scale down, and verify.

    Args:
        settings: Stage-2 deploy settings.

    Returns:
        Whether the frontend was reachable at the end.

    Raises:
        RuntimeError: If kubectl or a manifest is missing.
    """
    console.print(Panel.fit("Stage 2: Online Boutique + metrics-server", style="bold blue"))
    require_command("kubectl")
    deploy_dir = settings.deploy_dir
    manifests = [deploy_dir / APP_MANIFEST, deploy_dir / METRICS_MANIFEST]
    if not all(manifest.is_file() for manifest in manifests):
        raise RuntimeError(f"Deployment yaml not found under {deploy_dir}")

    master_ip = settings.master_ip or detect_master_ip()
    apply_manifests(manifests)
    scale_for_single_worker(APP_WORKLOADS)
    wait_rollouts(APP_WORKLOADS, settings.rollout_timeout_seconds)
    return verify(master_ip, settings.frontend_nodeport, settings.probe_timeout_seconds)
