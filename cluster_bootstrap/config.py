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


"""Configuration classes, node descriptors, and config display."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict
from rich.panel import Panel

from cluster_bootstrap import console, logger
from cluster_bootstrap.constants import (
    APISERVER_READY_MAX_RETRIES,
    APISERVER_READY_POLL_INTERVAL_SECONDS,
    DEFAULT_CONTROLLER_MODE,
    DEFAULT_ENV_FILE,
    DEFAULT_FRONTEND_NODEPORT,
    DEFAULT_LOADGEN_NODE,
    DEFAULT_MASTER_NODE,
    DEFAULT_PROJECT_NAME,
    DEFAULT_WORKER_NODE,
    FRONTEND_PROBE_TIMEOUT_SECONDS,
    LAUNCHER_SCRIPT,
    PACKAGE_DIR,
    REL_DEPLOYMENTS_DIR,
    ROLLOUT_TIMEOUT_SECONDS,
    pinned,
)


# ============================================================================
# Enumerations and node descriptors
# ============================================================================

class Role(str, Enum):
    """Role a host plays in the cluster."""

    MASTER = "master"
    WORKER = "worker"
    LOADGEN = "loadgen"


class ControllerMode(str, Enum):
    """TopFull controller variant started on the master."""

    MIMD = "mimd"
    RL = "rl"
    WITHOUT_CLUSTER = "without_cluster"


class SyncStrategy(str, Enum):
    """How the project tree reaches remote hosts."""

    ARCHIVE = "archive"
    GIT = "git"


@dataclass(frozen=True)
class NodeDescriptor:
    """A host taking part in the bootstrap.

    Attributes:
        role: Role of the host.
        hostname: SSH-resolvable host name or address.
        ssh_user: Remote login user, or None for the ssh default.
    """

    role: Role
    hostname: str
    ssh_user: str | None = None

    @property
    def target(self) -> str:
        """SSH destination, ``user@host`` when a user is set."""
        if self.ssh_user:
            return f"{self.ssh_user}@{self.hostname}"
        return self.hostname


def default_source_dir(start: Path | None = None) -> Path:
    """Locate the project checkout that holds the launcher script.

    Searches ``start`` (default: the working directory) and its parents, then
    the checkout this package was loaded from.

    Args:
        start: Directory to search from.

    Returns:
        The checkout root, or ``start`` itself when none is found.
    """
    start = start or Path.cwd()
    for candidate in (start, *start.parents, PACKAGE_DIR.parent):
        if (candidate / LAUNCHER_SCRIPT).is_file():
            return candidate
    return start


# ============================================================================
# Configuration classes
# ============================================================================

class OverrideFileSettings(BaseSettings):
    """Settings base where the override file wins over the process environment.

    Resolution priority: init kwargs > override file (.env) > environment > defaults.
    Empty values count as unset.
    """

    model_config = SettingsConfigDict(
        env_file=DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, dotenv_settings, env_settings, file_secret_settings


class NodeSettings(OverrideFileSettings):
    """Per-node installer configuration.

    Attributes:
        project_root: Project checkout on this node (add-on manifests live here).
        master_ip: Optional API server advertise address.
        k8s_version_minor: Target Kubernetes minor version (e.g. ``v1.28``).
        k8s_apt_repo_minor: Package repository minor, defaults to k8s_version_minor.
        kubeadm_join_cmd: Join command for the worker role.
        join_cmd_fixed: Join command pinned for ``node worker``; wins over kubeadm_join_cmd.
        apiserver_retries: Number of API server health polls.
        apiserver_poll_seconds: Delay between API server health polls.
    """

    project_root: Path = Field(default_factory=lambda: Path.home() / DEFAULT_PROJECT_NAME)
    master_ip: str | None = None
    k8s_version_minor: str = pinned("kubernetes", "default_minor", default="v1.28")
    k8s_apt_repo_minor: str | None = None
    kubeadm_join_cmd: str | None = None
    join_cmd_fixed: str | None = None
    apiserver_retries: int = Field(default=APISERVER_READY_MAX_RETRIES, ge=1)
    apiserver_poll_seconds: float = Field(default=APISERVER_READY_POLL_INTERVAL_SECONDS, ge=0)

    @property
    def requested_repo_minor(self) -> str:
        """Repository minor before expired-key remapping."""
        return self.k8s_apt_repo_minor or self.k8s_version_minor


class ClusterSettings(OverrideFileSettings):
    """Coordinator configuration for the three-node bootstrap.

    Attributes:
        master_node: Control-plane host.
        worker_node: Worker host.
        loadgen_node: Load generator host.
        ssh_user: Remote login user, or None for the ssh default.
        project_name: Project directory name under the remote home.
        remote_repo_dir: Explicit remote project path, or None for ``$HOME/<project_name>``.
        sync_strategy: How the project tree is distributed.
        repo_url: Repository URL for the git strategy, or None for the local origin.
        branch: Branch for the git strategy, or None for the current local branch.
        skip_loadgen_prep: Whether the loadgen host is left alone.
        run_topfull_deploy: Whether to run the post-bootstrap deploy phase.
        controller_mode: Controller variant for the deploy phase.
        parallel_distribution: Whether hosts are prepared concurrently.
        source_dir: Local project checkout that is distributed (holds the launcher).
        master_ip: Master address written into loadgen scripts.
        frontend_nodeport: Frontend NodePort targeted by the load generator.
    """

    master_node: str = DEFAULT_MASTER_NODE
    worker_node: str = DEFAULT_WORKER_NODE
    loadgen_node: str = DEFAULT_LOADGEN_NODE
    ssh_user: str | None = None
    project_name: str = DEFAULT_PROJECT_NAME
    remote_repo_dir: str | None = None
    sync_strategy: SyncStrategy = SyncStrategy.ARCHIVE
    repo_url: str | None = None
    branch: str | None = None
    skip_loadgen_prep: bool = False
    run_topfull_deploy: bool = False
    controller_mode: ControllerMode = ControllerMode.MIMD
    parallel_distribution: bool = False
    source_dir: Path = Field(default_factory=default_source_dir)
    master_ip: str | None = None
    frontend_nodeport: int = Field(default=DEFAULT_FRONTEND_NODEPORT, ge=1, le=65535)

    @field_validator("controller_mode", mode="before")
    @classmethod
    def _fallback_controller_mode(cls, value: Any) -> Any:
        if isinstance(value, ControllerMode):
            return value
        try:
            return ControllerMode(str(value).strip().lower())
        except ValueError:
            logger.warning("Unknown controller mode %r, using %s", value, DEFAULT_CONTROLLER_MODE)
            return ControllerMode(DEFAULT_CONTROLLER_MODE)

    def node(self, role: Role) -> NodeDescriptor:
        """Build the descriptor for one role.

        Args:
            role: Role to resolve.

        Returns:
            Node descriptor carrying the configured host and SSH user.
        """
        hostnames = {
            Role.MASTER: self.master_node,
            Role.WORKER: self.worker_node,
            Role.LOADGEN: self.loadgen_node,
        }
        return NodeDescriptor(role=role, hostname=hostnames[role], ssh_user=self.ssh_user)


class DeploySettings(OverrideFileSettings):
    """Stage-2 workload deployment configuration (runs on the master).

    Attributes:
        project_root: Project checkout on the master.
        topfull_deploy_dir: Manifest directory override.
        master_ip: Address used for the frontend probe, or None to detect.
        frontend_nodeport: Externally exposed frontend port.
        rollout_timeout_seconds: Per-deployment rollout deadline.
        probe_timeout_seconds: HTTP timeout for the frontend probe.
    """

    project_root: Path = Field(default_factory=lambda: Path.home() / DEFAULT_PROJECT_NAME)
    topfull_deploy_dir: Path | None = None
    master_ip: str | None = None
    frontend_nodeport: int = Field(default=DEFAULT_FRONTEND_NODEPORT, ge=1, le=65535)
    rollout_timeout_seconds: int = Field(default=ROLLOUT_TIMEOUT_SECONDS, ge=1)
    probe_timeout_seconds: float = Field(default=FRONTEND_PROBE_TIMEOUT_SECONDS, gt=0)

    @property
    def deploy_dir(self) -> Path:
        """Directory holding the application and metrics manifests."""
        return self.topfull_deploy_dir or self.project_root / REL_DEPLOYMENTS_DIR


def load_settings(settings_cls: type[OverrideFileSettings], env_file: Path | None = DEFAULT_ENV_FILE):
    """Resolve a settings class against an override file.

    Args:
        settings_cls: Settings class to instantiate.
        env_file: Override file path; a missing file is ignored.

    Returns:
        Resolved, immutable-by-convention settings instance.
    """
    return settings_cls(_env_file=env_file)


# ============================================================================
# Display
# ============================================================================

def display_config(cfg: ClusterSettings) -> None:
    """Print the resolved coordinator configuration.

    Args:
        cfg: Resolved coordinator configuration.
    """
    console.print(Panel.fit("Configuration", style="bold blue"))
    console.print("[yellow]Nodes:[/yellow]")
    for role in Role:
        console.print(f"  {role.value:<16}: {cfg.node(role).target}")
    console.print("[yellow]Distribution:[/yellow]")
    console.print(f"  project_name    : {cfg.project_name}")
    console.print(f"  remote_repo_dir : {cfg.remote_repo_dir or '(remote $HOME/' + cfg.project_name + ')'}")
    console.print(f"  source_dir      : {cfg.source_dir}")
    console.print(f"  sync_strategy   : {cfg.sync_strategy.value}")
    if cfg.sync_strategy is SyncStrategy.GIT:
        console.print(f"  repo_url        : {cfg.repo_url or '(local origin)'}")
        console.print(f"  branch          : {cfg.branch or '(current branch)'}")
    console.print(f"  skip_loadgen    : {cfg.skip_loadgen_prep}")
    console.print(f"  parallel        : {cfg.parallel_distribution}")
    if cfg.run_topfull_deploy:
        console.print("[yellow]TopFull deploy:[/yellow]")
        console.print(f"  controller_mode : {cfg.controller_mode.value}")
        console.print(f"  master_ip       : {cfg.master_ip or '(unset)'}")
