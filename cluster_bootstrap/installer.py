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


"""Per-node installer: container runtime, Kubernetes packages, and role application.

The installer is an explicit state machine::

    uninitialized -> runtime-ready -> packages-ready -> role-applied

Each transition is idempotent, so re-running a finished node is safe. Host
state ("already initialized", "already joined") is read through a
:class:`HostProbe` so the role logic can be exercised without a real node.
"""

from __future__ import annotations

import getpass
import json
import os
import pwd
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import requests
import sh
from rich.panel import Panel
from tenacity import retry, stop_after_attempt, wait_fixed

from cluster_bootstrap import console
from cluster_bootstrap.config import NodeSettings, Role
from cluster_bootstrap.constants import (
    ADMIN_CONF,
    APISERVER_PORT,
    APT_LISTS_DIR,
    APT_KEYRINGS_DIR,
    APT_SOURCES_DIR,
    APT_SOURCES_LIST,
    CRI_DOCKER_SERVICE_UNIT,
    CRI_DOCKER_SOCKET_UNIT,
    CRI_DOCKERD_BIN,
    CRI_SOCKET,
    CRI_SOCKET_FLAG,
    DOCKER_DAEMON_CONFIG,
    DOCKER_DAEMON_JSON,
    DOCKER_INSTALL_SCRIPT,
    FSTAB,
    JOIN_MARKER,
    K8S_APT_KEYRING,
    K8S_APT_SOURCES_LIST,
    K8S_MODULES_CONF,
    K8S_SYSCTL_CONF,
    K8S_SYSCTL_SETTINGS,
    KERNEL_MODULES,
    KUBELET_CONF,
    POD_NETWORK_CIDR,
    REL_CADVISOR_DIR,
    REL_CADVISOR_KUSTOMIZATION,
    REL_CALICO_MANIFEST,
    SERVICE_CIDR,
    STALE_LIST_GLOBS,
    STALE_REPO_SED_EXPR,
    pinned,
)
from cluster_bootstrap.utils import command_exists, kubectl_admin, sudo_write

HTTP_TIMEOUT_SECONDS = 30

MISSING_JOIN_MESSAGE = (
    "For worker role, provide join command as 2nd arg or KUBEADM_JOIN_CMD env.\n"
    "Example:\n"
    '  cluster-bootstrap node setup worker "kubeadm join ... --token ... '
    '--discovery-token-ca-cert-hash ..."'
)


class Phase(str, Enum):
    """Installer progress on one node."""

    UNINITIALIZED = "uninitialized"
    RUNTIME_READY = "runtime-ready"
    PACKAGES_READY = "packages-ready"
    ROLE_APPLIED = "role-applied"


@dataclass(frozen=True)
class StepResult:
    """Outcome of a single phase transition.

    Attributes:
        phase: Phase the installer is in after the step.
        ok: Whether the transition succeeded.
        message: Failure detail, empty on success.
    """

    phase: Phase
    ok: bool
    message: str = ""


class InstallerError(RuntimeError):
    """A phase transition failed; the node stays in ``phase``."""

    def __init__(self, phase: Phase, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class ApiServerUnavailableError(RuntimeError):
    """The control-plane API server never reported healthy."""


class HostProbe(Protocol):
    """Idempotency signals read from the node."""

    def master_initialized(self) -> bool:
        """Whether control-plane admin credentials exist."""

    def worker_joined(self) -> bool:
        """Whether the node agent is already configured."""


class LocalHostProbe:
    """HostProbe backed by the kubeadm state files on this machine."""

    def __init__(self, admin_conf: Path = ADMIN_CONF, kubelet_conf: Path = KUBELET_CONF) -> None:
        self.admin_conf = admin_conf
        self.kubelet_conf = kubelet_conf

    def master_initialized(self) -> bool:
        return self.admin_conf.exists()

    def worker_joined(self) -> bool:
        return self.kubelet_conf.exists()


# ============================================================================
# Join command helpers
# ============================================================================

def normalize_join_command(raw: str) -> str:
    """Prepare a join command for execution under ``sudo bash -lc``.

    Strips a leading ``sudo`` and appends the cri-dockerd socket flag unless
    one is already present.

    Args:
        raw: Join command as printed by ``kubeadm token create``.

    Returns:
        Normalized join command.
    """
    cmd = raw.strip()
    if cmd.startswith("sudo "):
        cmd = cmd[len("sudo "):].lstrip()
    if CRI_SOCKET_FLAG not in cmd:
        cmd = f"{cmd} {CRI_SOCKET_FLAG} {CRI_SOCKET}"
    return cmd


def is_join_command(cmd: str) -> bool:
    """Check that a string carries the pieces a worker join needs.

    Args:
        cmd: Candidate join command.
    """
    tokens = cmd.split()
    return (
        tokens[:2] == ["kubeadm", "join"]
        and "--token" in tokens
        and "--discovery-token-ca-cert-hash" in tokens
    )


def format_join_line(cmd: str) -> str:
    """Render the marker line the coordinator extracts from master output."""
    return f"{JOIN_MARKER}={cmd}"


def resolve_repo_minor(requested: str) -> str:
    """Map a Kubernetes minor to an apt channel with a valid signing key.

    Args:
        requested: Requested minor version (e.g. ``v1.27``).

    Returns:
        The requested minor, or the fallback minor when its key has expired.
    """
    expired = pinned("kubernetes", "expired_key_minors", default=[])
    if requested in expired:
        fallback = pinned("kubernetes", "fallback_minor")
        console.print(
            f"[yellow]\u26a0\ufe0f  Kubernetes apt repo {requested} has an expired key, "
            f"falling back to {fallback}[/yellow]"
        )
        return fallback
    return requested


def apiserver_remediation(master_ip: str | None) -> str:
    """Build the operator guidance shown when the API server stays down."""
    return (
        f"Control-plane API server is not reachable at https://{master_ip or '127.0.0.1'}:{APISERVER_PORT}\n"
        "If this node is in a broken previous state, run:\n"
        "  sudo kubeadm reset -f\n"
        "Then rerun setup."
    )


# ============================================================================
# Container runtime
# ============================================================================

def disable_swap() -> None:
    """Turn swap off now and comment out swap entries in /etc/fstab."""
    console.print("[yellow]\u2139\ufe0f  Disabling swap[/yellow]")
    sh.sudo("swapoff", "-a")
    if FSTAB.exists():
        sh.sudo("sed", "-ri", r"/\sswap\s/s/^#?/#/", str(FSTAB))


def install_docker() -> None:
    """Install Docker through get.docker.com unless present, then enable it."""
    console.print("[yellow]\u2139\ufe0f  Installing Docker[/yellow]")
    if command_exists("docker"):
        console.print("[yellow]   docker already installed[/yellow]")
    else:
        sh.curl("-fsSL", pinned("docker", "install_script_url"), "-o", str(DOCKER_INSTALL_SCRIPT))
        sh.sudo("sh", str(DOCKER_INSTALL_SCRIPT))
    sh.sudo("systemctl", "enable", "--now", "docker")


def latest_cri_dockerd_version() -> str:
    """Look up the latest cri-dockerd release on GitHub.

    Returns:
        Version without the leading ``v`` (e.g. ``0.3.14``).
    """
    resp = requests.get(pinned("cri_dockerd", "release_api_url"), timeout=HTTP_TIMEOUT_SECONDS)
    resp.raise_for_status()
    return resp.json()["tag_name"].lstrip("v")


def install_cri_dockerd() -> None:
    """Install the cri-dockerd shim and its systemd units."""
    console.print("[yellow]\u2139\ufe0f  Installing cri-dockerd[/yellow]")
    if command_exists("cri-dockerd"):
        console.print("[yellow]   cri-dockerd already installed[/yellow]")
    else:
        version = latest_cri_dockerd_version()
        url = pinned("cri_dockerd", "download_url").format(version=version)
        with tempfile.TemporaryDirectory() as tmp:
            archive = Path(tmp) / f"cri-dockerd-{version}.amd64.tgz"
            sh.curl("-fL", url, "-o", str(archive))
            sh.tar("-xzf", str(archive), "-C", tmp)
            sh.sudo("install", "-m", "0755", str(Path(tmp) / "cri-dockerd" / "cri-dockerd"), str(CRI_DOCKERD_BIN))

    sh.sudo("curl", "-fsSL", pinned("cri_dockerd", "service_unit_url"), "-o", str(CRI_DOCKER_SERVICE_UNIT))
    sh.sudo("curl", "-fsSL", pinned("cri_dockerd", "socket_unit_url"), "-o", str(CRI_DOCKER_SOCKET_UNIT))
    sh.sudo("sed", "-i", "-e", f"s,/usr/bin/cri-dockerd,{CRI_DOCKERD_BIN},", str(CRI_DOCKER_SERVICE_UNIT))

    sh.sudo("systemctl", "daemon-reload")
    sh.sudo("systemctl", "enable", "--now", "cri-docker.socket")
    sh.sudo("systemctl", "restart", "docker", "cri-docker")


def configure_cgroup_and_kernel() -> None:
    """Switch Docker to the systemd cgroup driver and set bridge netfilter sysctls."""
    console.print("[yellow]\u2139\ufe0f  Configuring Docker cgroup and kernel params[/yellow]")
    sh.sudo("mkdir", "-p", str(DOCKER_DAEMON_JSON.parent))
    sudo_write(DOCKER_DAEMON_JSON, json.dumps(DOCKER_DAEMON_CONFIG, indent=2) + "\n")
    sh.sudo("systemctl", "restart", "docker", "cri-docker")

    sudo_write(K8S_MODULES_CONF, "".join(f"{module}\n" for module in KERNEL_MODULES))
    sudo_write(K8S_SYSCTL_CONF, "".join(f"{key} = {value}\n" for key, value in K8S_SYSCTL_SETTINGS.items()))
    for module in KERNEL_MODULES:
        try:
            sh.sudo("modprobe", module)
        except sh.ErrorReturnCode:
            console.print(f"[yellow]\u26a0\ufe0f  Could not load kernel module {module}[/yellow]")
    sh.sudo("sysctl", "--system")


# ============================================================================
# Kubernetes packages
# ============================================================================

def _apt_repo_url(minor: str) -> str:
    return pinned("kubernetes", "apt_repo_url").format(minor=minor)


def purge_stale_kubernetes_repos() -> None:
    """Remove Kubernetes apt entries, keyring, and cached indexes of older channels."""
    console.print("[yellow]\u2139\ufe0f  Removing stale Kubernetes apt sources[/yellow]")
    sources = [APT_SOURCES_LIST, *sorted(APT_SOURCES_DIR.glob("*.list"))]
    for source in sources:
        if source.is_file():
            sh.sudo("sed", "-i", "-E", STALE_REPO_SED_EXPR, str(source))
    sh.sudo("rm", "-f", str(K8S_APT_SOURCES_LIST), str(K8S_APT_KEYRING))

    stale_lists = sorted({path for pattern in STALE_LIST_GLOBS for path in APT_LISTS_DIR.glob(pattern)})
    if stale_lists:
        sh.sudo("rm", "-f", *(str(path) for path in stale_lists))


def install_kubernetes_apt_key(minor: str) -> None:
    """Fetch and dearmor the Release.key of a Kubernetes apt channel.

    Args:
        minor: Repository minor version.
    """
    resp = requests.get(f"{_apt_repo_url(minor)}Release.key", timeout=HTTP_TIMEOUT_SECONDS)
    resp.raise_for_status()
    sh.sudo("gpg", "--batch", "--yes", "--dearmor", "-o", str(K8S_APT_KEYRING), _in=resp.content)


def configure_kubernetes_repo(minor: str) -> None:
    """Point apt at the pinned Kubernetes channel.

    Args:
        minor: Repository minor version, already remapped by resolve_repo_minor.
    """
    console.print(f"[yellow]\u2139\ufe0f  Configuring Kubernetes apt repo {minor}[/yellow]")
    sh.sudo("apt-get", "update")
    sh.sudo("apt-get", "install", "-y", *pinned("apt_prerequisites", default=[]))
    sh.sudo("mkdir", "-p", str(APT_KEYRINGS_DIR))
    install_kubernetes_apt_key(minor)
    sudo_write(K8S_APT_SOURCES_LIST, f"deb [signed-by={K8S_APT_KEYRING}] {_apt_repo_url(minor)} /\n")


def install_kubernetes_packages(minor: str) -> None:
    """Install and hold kubelet, kubeadm, and kubectl.

    A failed index refresh re-fetches the channel key once before retrying.

    Args:
        minor: Repository minor version, used for the key refresh.
    """
    console.print("[yellow]\u2139\ufe0f  Installing kubelet/kubeadm/kubectl[/yellow]")
    try:
        sh.sudo("apt-get", "update")
    except sh.ErrorReturnCode:
        console.print("[yellow]   apt update failed once, refreshing Kubernetes apt key and retrying[/yellow]")
        sh.sudo("rm", "-f", str(K8S_APT_KEYRING))
        install_kubernetes_apt_key(minor)
        sh.sudo("apt-get", "update")

    packages = pinned("kubernetes", "packages")
    sh.sudo("apt-get", "install", "-y", *packages)
    sh.sudo("apt-mark", "hold", *packages)


# ============================================================================
# Control plane
# ============================================================================

def wait_for_apiserver(settings: NodeSettings) -> None:
    """Poll the API server /readyz endpoint with bounded retries.

    Args:
        settings: Node settings with the retry budget and advertise address.

    Raises:
        ApiServerUnavailableError: If the API server never becomes healthy.
    """
    console.print("[yellow]\u2139\ufe0f  Waiting for the API server to become healthy...[/yellow]")

    @retry(
        stop=stop_after_attempt(settings.apiserver_retries),
        wait=wait_fixed(settings.apiserver_poll_seconds),
        reraise=True,
    )
    def _probe() -> None:
        kubectl_admin("get", "--raw=/readyz")

    try:
        _probe()
    except sh.ErrorReturnCode as err:
        raise ApiServerUnavailableError(apiserver_remediation(settings.master_ip)) from err
    console.print("[green]\u2705 API server is healthy[/green]")


def install_admin_kubeconfig() -> Path:
    """Copy the kubeadm admin kubeconfig into the invoking user's profile.

    Returns:
        Path of the user's kubeconfig, also exported as KUBECONFIG.

    Raises:
        RuntimeError: If the invoking user has no passwd entry.
    """
    user = os.environ.get("SUDO_USER") or getpass.getuser()
    try:
        entry = pwd.getpwnam(user)
    except KeyError as err:
        raise RuntimeError(f"No passwd entry for {user!r}; cannot install the admin kubeconfig") from err

    kube_dir = Path(entry.pw_dir) / ".kube"
    kube_dir.mkdir(parents=True, exist_ok=True)
    dest = kube_dir / "config"
    sh.sudo("cp", "-f", str(ADMIN_CONF), str(dest))
    sh.sudo("chown", f"{entry.pw_uid}:{entry.pw_gid}", str(dest))

    os.environ["KUBECONFIG"] = str(dest)
    console.print(f"[green]  \u2713 Admin kubeconfig copied to {dest}[/green]")
    return dest


def apply_network_addons(project_root: Path) -> list[str]:
    """Apply Calico and cAdvisor from the project tree when present.

    Missing manifests are reported and skipped.

    Args:
        project_root: Project checkout holding the add-on manifests.

    Returns:
        Names of the add-ons that were applied.
    """
    applied: list[str] = []

    calico = project_root / REL_CALICO_MANIFEST
    if calico.is_file():
        console.print("[yellow]\u2139\ufe0f  Applying Calico CNI[/yellow]")
        kubectl_admin("apply", "-f", str(calico))
        applied.append("calico")
    else:
        console.print(f"[yellow]\u26a0\ufe0f  WARNING: calico file not found at {calico}[/yellow]")

    cadvisor = project_root / REL_CADVISOR_DIR
    if cadvisor.is_dir():
        console.print("[yellow]\u2139\ufe0f  Installing cAdvisor[/yellow]")
        manifest = kubectl_admin("kustomize", str(cadvisor / REL_CADVISOR_KUSTOMIZATION))
        kubectl_admin("apply", "-f", "-", _in=str(manifest))
        applied.append("cadvisor")
    else:
        console.print(f"[yellow]\u26a0\ufe0f  WARNING: cadvisor directory not found at {cadvisor}[/yellow]")

    return applied


def emit_join_command() -> str:
    """Create a fresh bootstrap token and print the join marker line on stdout.

    Returns:
        The normalized join command.
    """
    raw = str(sh.sudo("kubeadm", "token", "create", "--print-join-command")).strip()
    join_cmd = normalize_join_command(raw)
    console.print("[green]\u2705 Master setup done. Use this join command on worker:[/green]")
    print(format_join_line(join_cmd), flush=True)
    return join_cmd


# ============================================================================
# Installer state machine
# ============================================================================

class NodeInstaller:
    """Drive one node from a bare host to an applied cluster role.

    Args:
        role: ``Role.MASTER`` or ``Role.WORKER``.
        settings: Resolved node settings.
        probe: Host state probe, defaults to the local kubeadm files.
        join_command: Join command for the worker role.
        start_phase: Phase to resume from.
    """

    def __init__(
        self,
        role: Role,
        settings: NodeSettings,
        probe: HostProbe | None = None,
        join_command: str | None = None,
        start_phase: Phase = Phase.UNINITIALIZED,
    ) -> None:
        if role not in (Role.MASTER, Role.WORKER):
            raise ValueError("Role must be 'master' or 'worker'")
        self.role = role
        self.settings = settings
        self.probe = probe or LocalHostProbe()
        self.join_command = join_command
        self.phase = start_phase
        self._transitions: dict[Phase, Callable[[], Phase]] = {
            Phase.UNINITIALIZED: self.prepare_runtime,
            Phase.RUNTIME_READY: self.install_packages,
            Phase.PACKAGES_READY: self.apply_role,
        }

    def advance(self) -> StepResult:
        """Run the transition out of the current phase."""
        if self.phase is Phase.ROLE_APPLIED:
            return StepResult(self.phase, True)
        step = self._transitions[self.phase]
        try:
            self.phase = step()
        except (sh.ErrorReturnCode, sh.CommandNotFound, requests.RequestException,
                OSError, RuntimeError, ValueError) as err:
            return StepResult(self.phase, False, str(err))
        return StepResult(self.phase, True)

    def run(self) -> None:
        """Advance until the role is applied.

        Raises:
            InstallerError: On the first failed transition.
        """
        while self.phase is not Phase.ROLE_APPLIED:
            result = self.advance()
            if not result.ok:
                raise InstallerError(result.phase, result.message)

    # -- transitions --

    def prepare_runtime(self) -> Phase:
        console.print(Panel.fit("Preparing container runtime", style="bold blue"))
        disable_swap()
        install_docker()
        install_cri_dockerd()
        configure_cgroup_and_kernel()
        return Phase.RUNTIME_READY

    def install_packages(self) -> Phase:
        console.print(Panel.fit("Installing Kubernetes packages", style="bold blue"))
        minor = resolve_repo_minor(self.settings.requested_repo_minor)
        purge_stale_kubernetes_repos()
        configure_kubernetes_repo(minor)
        install_kubernetes_packages(minor)
        return Phase.PACKAGES_READY

    def apply_role(self) -> Phase:
        if self.role is Role.MASTER:
            self.setup_master()
        else:
            self.join_worker()
        return Phase.ROLE_APPLIED

    # -- roles --

    def setup_master(self) -> str:
        """Initialize (or revive) the control plane and print the join line.

        Returns:
            The join command emitted for workers.
        """
        console.print(Panel.fit("Initializing Kubernetes control-plane", style="bold blue"))
        if not self.probe.master_initialized():
            init_args = [
                "kubeadm", "init",
                "--pod-network-cidr", POD_NETWORK_CIDR,
                "--service-cidr", SERVICE_CIDR,
                "--cri-socket", CRI_SOCKET,
            ]
            if self.settings.master_ip:
                init_args += ["--apiserver-advertise-address", self.settings.master_ip]
            sh.sudo(*init_args)
        else:
            console.print(f"[yellow]   Detected existing {ADMIN_CONF}, skip kubeadm init[/yellow]")
            # admin.conf alone does not mean the API server is up.
            try:
                sh.sudo("systemctl", "restart", "kubelet")
            except sh.ErrorReturnCode:
                console.print("[yellow]\u26a0\ufe0f  kubelet restart failed[/yellow]")

        wait_for_apiserver(self.settings)
        install_admin_kubeconfig()
        apply_network_addons(self.settings.project_root)
        return emit_join_command()

    def join_worker(self) -> bool:
        """Join this node to the cluster unless it already joined.

        Returns:
            True if a join ran, False if it was skipped.

        Raises:
            ValueError: If no join command is available.
        """
        console.print(Panel.fit("Joining worker to cluster", style="bold blue"))
        if self.probe.worker_joined():
            console.print(f"[yellow]   Worker seems already joined ({KUBELET_CONF} exists), skip join[/yellow]")
            return False
        if not (self.join_command or "").strip():
            raise ValueError(MISSING_JOIN_MESSAGE)

        sh.sudo("bash", "-lc", normalize_join_command(self.join_command))
        console.print("[green]\u2705 Worker joined the cluster[/green]")
        return True
