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


"""Installer constants and the pinned versions read from dependencies.yaml."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

# -- Resolved paths --
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_ENV_FILE = Path(".env")
LAUNCHER_SCRIPT = "bootstrap.sh"


def load_dependencies() -> dict:
    """Load pinned versions and download URLs from dependencies.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    deps_file = PACKAGE_DIR / "dependencies.yaml"
    with open(deps_file) as f:
        return yaml.safe_load(f)


DEPENDENCIES = load_dependencies()


def pinned(section: str, key: str | None = None, default: Any = None) -> Any:
    """Look up a pinned installer value from dependencies.yaml.

    ``pinned("kubernetes", "packages")`` reads one key of a section, while
    ``pinned("apt_prerequisites")`` returns the whole section.

    Returns:
        The pinned value, or *default* when the section or key is absent.
    """
    value = DEPENDENCIES.get(section)
    if key is not None:
        value = value.get(key) if isinstance(value, dict) else None
    return default if value is None else value


# -- Join hand-off --
# The master step prints exactly "<JOIN_MARKER>=<join command>" on stdout.
JOIN_MARKER = "__JOIN_CMD__"
CRI_SOCKET = "unix://var/run/cri-dockerd.sock"
CRI_SOCKET_FLAG = "--cri-socket"

# -- kubeadm --
POD_NETWORK_CIDR = "192.168.0.0/16"
SERVICE_CIDR = "10.96.0.0/12"
APISERVER_PORT = 6443
ADMIN_CONF = Path("/etc/kubernetes/admin.conf")
KUBELET_CONF = Path("/etc/kubernetes/kubelet.conf")

APISERVER_READY_MAX_RETRIES = 45
APISERVER_READY_POLL_INTERVAL_SECONDS = 2

# -- Container runtime --
DOCKER_INSTALL_SCRIPT = Path("/tmp/get-docker.sh")
DOCKER_DAEMON_JSON = Path("/etc/docker/daemon.json")
DOCKER_DAEMON_CONFIG = {
    "exec-opts": ["native.cgroupdriver=systemd"],
    "log-driver": "json-file",
    "log-opts": {"max-size": "100m"},
    "storage-driver": "overlay2",
}
CRI_DOCKERD_BIN = Path("/usr/local/bin/cri-dockerd")
CRI_DOCKER_SERVICE_UNIT = Path("/etc/systemd/system/cri-docker.service")
CRI_DOCKER_SOCKET_UNIT = Path("/etc/systemd/system/cri-docker.socket")

# -- Kernel --
FSTAB = Path("/etc/fstab")
KERNEL_MODULES = ("br_netfilter",)
K8S_MODULES_CONF = Path("/etc/modules-load.d/k8s.conf")
K8S_SYSCTL_CONF = Path("/etc/sysctl.d/k8s.conf")
K8S_SYSCTL_SETTINGS = {
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.bridge.bridge-nf-call-iptables": "1",
}

# -- apt --
APT_SOURCES_LIST = Path("/etc/apt/sources.list")
APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")
APT_LISTS_DIR = Path("/var/lib/apt/lists")
APT_KEYRINGS_DIR = Path("/etc/apt/keyrings")
K8S_APT_KEYRING = APT_KEYRINGS_DIR / "kubernetes-apt-keyring.gpg"
K8S_APT_SOURCES_LIST = APT_SOURCES_DIR / "kubernetes.list"
STALE_REPO_SED_EXPR = r"/pkgs\.k8s\.io|apt\.kubernetes\.io/d"
STALE_LIST_GLOBS = ("*pkgs.k8s.io*", "*kubernetes*")

# -- SSH / distribution --
SSH_OPTIONS = ("-o", "BatchMode=yes")
ARCHIVE_EXCLUDES = (
    ".git",
    ".env",
    ".venv",
    "venv",
    "__pycache__",
    "*.pyc",
    ".pytest_cache",
    ".mypy_cache",
    "*.egg-info",
)
SETUP_FILES = (LAUNCHER_SCRIPT,)

# -- Defaults --
DEFAULT_MASTER_NODE = "node0"
DEFAULT_WORKER_NODE = "node1"
DEFAULT_LOADGEN_NODE = "node2"
DEFAULT_PROJECT_NAME = "TopFullExt"
DEFAULT_FRONTEND_NODEPORT = 30440
PROXY_PORT = 8090

# -- Project tree (relative to PROJECT_ROOT / remote repo dir) --
REL_TOPFULL_MASTER = "TopFull_master"
REL_TOPFULL_LOADGEN = "TopFull_loadgen"
REL_CALICO_MANIFEST = f"{REL_TOPFULL_MASTER}/calico.yaml"
REL_CADVISOR_DIR = f"{REL_TOPFULL_MASTER}/online_boutique_scripts/cadvisor"
REL_CADVISOR_KUSTOMIZATION = "deploy/kubernetes/base"
REL_DEPLOYMENTS_DIR = f"{REL_TOPFULL_MASTER}/online_boutique_scripts/deployments"
REL_TOPFULL_SRC = f"{REL_TOPFULL_MASTER}/online_boutique_scripts/src"
APP_MANIFEST = "online_boutique_original_custom.yaml"
METRICS_MANIFEST = "metric-server-latest.yaml"

MASTER_RUNTIME_FILES = (
    f"{REL_TOPFULL_SRC}/global_config.json",
    f"{REL_TOPFULL_SRC}/deploy_rl.py",
    f"{REL_TOPFULL_SRC}/deploy_mimd.py",
    f"{REL_TOPFULL_SRC}/deploy_without_cluster.py",
    f"{REL_TOPFULL_SRC}/metric_collector.py",
    f"{REL_TOPFULL_SRC}/overload_detection.py",
    f"{REL_TOPFULL_SRC}/proxy/proxy_online_boutique.go",
    f"{REL_TOPFULL_SRC}/proxy/proxy_train_ticket.go",
)
LOADGEN_RUNTIME_FILES = (
    f"{REL_TOPFULL_LOADGEN}/online_boutique_create.sh",
    f"{REL_TOPFULL_LOADGEN}/online_boutique_create2.sh",
    f"{REL_TOPFULL_LOADGEN}/locust_online_boutique.py",
)

# -- Controller variants --
CONTROLLER_SCRIPTS = {
    "mimd": "deploy_mimd.py",
    "rl": "deploy_rl.py",
    "without_cluster": "deploy_without_cluster.py",
}
DEFAULT_CONTROLLER_MODE = "mimd"

# -- tmux sessions --
SESSION_PROXY = "topfull-proxy"
SESSION_CONTROLLER = "topfull-controller"
SESSION_METRICS = "topfull-metrics"
SESSION_LOADGEN = "topfull-loadgen"

# -- Namespaces --
NS_DEFAULT = "default"
NS_KUBE_SYSTEM = "kube-system"

# -- Workloads --
APP_SERVICES = (
    "frontend",
    "recommendationservice",
    "currencyservice",
    "paymentservice",
    "productcatalogservice",
    "shippingservice",
    "redis-cart",
    "emailservice",
    "checkoutservice",
    "adservice",
    "cartservice",
)
METRICS_DEPLOYMENT = "metrics-server"
SINGLE_WORKER_REPLICAS = 1
ROLLOUT_TIMEOUT_SECONDS = 300
FRONTEND_PROBE_TIMEOUT_SECONDS = 5
