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


from unittest.mock import MagicMock

import pytest
import sh

# Modules that call ``sh`` directly; the fake is installed in all of them so
# helpers in utils see the same mock as their callers.
SH_MODULES = (
    "cluster_bootstrap.distributor",
    "cluster_bootstrap.installer",
    "cluster_bootstrap.remote",
    "cluster_bootstrap.utils",
    "cluster_bootstrap.workloads",
)

SETTINGS_ENV_KEYS = (
    "MASTER_NODE", "WORKER_NODE", "LOADGEN_NODE", "SSH_USER", "PROJECT_NAME",
    "REMOTE_REPO_DIR", "SYNC_STRATEGY", "REPO_URL", "BRANCH", "SKIP_LOADGEN_PREP",
    "RUN_TOPFULL_DEPLOY", "CONTROLLER_MODE", "PARALLEL_DISTRIBUTION", "SOURCE_DIR",
    "KUBEADM_JOIN_CMD", "JOIN_CMD_FIXED", "PROJECT_ROOT", "MASTER_IP",
    "K8S_VERSION_MINOR", "K8S_APT_REPO_MINOR", "TOPFULL_DEPLOY_DIR", "FRONTEND_NODEPORT",
    "APISERVER_RETRIES", "APISERVER_POLL_SECONDS",
)

JOIN_OUTPUT = (
    "kubeadm join 10.10.1.1:6443 --token abcdef.0123456789abcdef "
    "--discovery-token-ca-cert-hash sha256:1234\n"
)


def error_return(cmd="cmd", stderr=b"boom"):
    """A real sh exception for a command that exited 1."""
    return sh.ErrorReturnCode_1(cmd, b"", stderr)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run every test in an empty directory without inherited settings."""
    for key in SETTINGS_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def fake_sh(monkeypatch):
    fake = MagicMock(name="sh")
    fake.ErrorReturnCode = sh.ErrorReturnCode
    fake.CommandNotFound = sh.CommandNotFound
    for module in SH_MODULES:
        monkeypatch.setattr(f"{module}.sh", fake)
    return fake


def sudo_calls(fake):
    """Argument tuples of every ``sh.sudo`` invocation."""
    return [call.args for call in fake.sudo.call_args_list]
