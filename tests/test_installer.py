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


from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import JOIN_OUTPUT, error_return, sudo_calls

from cluster_bootstrap import installer
from cluster_bootstrap.config import NodeSettings, Role
from cluster_bootstrap.constants import CRI_SOCKET
from cluster_bootstrap.installer import (
    InstallerError,
    LocalHostProbe,
    NodeInstaller,
    Phase,
    is_join_command,
    normalize_join_command,
    resolve_repo_minor,
)

EXPECTED_JOIN = f"{JOIN_OUTPUT.strip()} --cri-socket {CRI_SOCKET}"


class FakeProbe:
    def __init__(self, initialized=False, joined=False):
        self.initialized = initialized
        self.joined = joined

    def master_initialized(self):
        return self.initialized

    def worker_joined(self):
        return self.joined


@pytest.fixture
def settings(tmp_path):
    return NodeSettings(
        project_root=tmp_path,
        master_ip="10.10.1.1",
        apiserver_retries=3,
        apiserver_poll_seconds=0,
    )


@pytest.fixture
def no_kubeconfig_copy(monkeypatch, tmp_path):
    monkeypatch.setattr(installer, "install_admin_kubeconfig", lambda: tmp_path / "config")


def _sudo_router(fake, readyz_error=None):
    def _sudo(*args, **kwargs):
        if args[:3] == ("kubeadm", "token", "create"):
            return JOIN_OUTPUT
        if readyz_error is not None and "--raw=/readyz" in args:
            raise readyz_error
        return ""
    fake.sudo.side_effect = _sudo


# ----------------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------------

def test_expired_minors_are_remapped():
    assert resolve_repo_minor("v1.26") == "v1.28"
    assert resolve_repo_minor("v1.27") == "v1.28"
    assert resolve_repo_minor("v1.28") == "v1.28"
    assert resolve_repo_minor("v1.30") == "v1.30"


def test_normalize_strips_sudo_and_appends_socket():
    assert normalize_join_command("sudo " + JOIN_OUTPUT) == EXPECTED_JOIN


def test_normalize_does_not_duplicate_socket_flag():
    once = normalize_join_command(JOIN_OUTPUT)

    assert normalize_join_command(once) == once
    assert once.count("--cri-socket") == 1

    custom = "kubeadm join 1.2.3.4:6443 --token t --discovery-token-ca-cert-hash h --cri-socket unix://other.sock"
    assert normalize_join_command(custom) == custom


def test_is_join_command():
    assert is_join_command(EXPECTED_JOIN)
    assert not is_join_command("")
    assert not is_join_command("kubeadm init")
    assert not is_join_command("kubeadm join 1.2.3.4:6443 --token abc")


def test_local_probe_reads_kubeadm_files(tmp_path):
    admin = tmp_path / "admin.conf"
    kubelet = tmp_path / "kubelet.conf"
    probe = LocalHostProbe(admin_conf=admin, kubelet_conf=kubelet)
    assert not probe.master_initialized()
    assert not probe.worker_joined()

    admin.write_text("x")
    kubelet.write_text("x")
    assert probe.master_initialized()
    assert probe.worker_joined()


def test_installer_rejects_loadgen_role(settings):
    with pytest.raises(ValueError):
        NodeInstaller(Role.LOADGEN, settings)


# ----------------------------------------------------------------------------
# Master role
# ----------------------------------------------------------------------------

def test_fresh_master_initializes_and_emits_join_line(fake_sh, settings, no_kubeconfig_copy, capsys):
    _sudo_router(fake_sh)
    node = NodeInstaller(Role.MASTER, settings, probe=FakeProbe(), start_phase=Phase.PACKAGES_READY)

    node.run()

    assert node.phase is Phase.ROLE_APPLIED
    init_calls = [args for args in sudo_calls(fake_sh) if args[:2] == ("kubeadm", "init")]
    assert len(init_calls) == 1
    assert "--apiserver-advertise-address" in init_calls[0]
    assert CRI_SOCKET in init_calls[0]
    assert capsys.readouterr().out == f"__JOIN_CMD__={EXPECTED_JOIN}\n"


def test_initialized_master_skips_init_and_restarts_kubelet(fake_sh, settings, no_kubeconfig_copy, capsys):
    _sudo_router(fake_sh)
    node = NodeInstaller(
        Role.MASTER, settings, probe=FakeProbe(initialized=True), start_phase=Phase.PACKAGES_READY)

    node.run()

    calls = sudo_calls(fake_sh)
    assert not [args for args in calls if args[:2] == ("kubeadm", "init")]
    assert ("systemctl", "restart", "kubelet") in calls
    assert capsys.readouterr().out.startswith("__JOIN_CMD__=kubeadm join")


def test_unhealthy_apiserver_fails_with_remediation(fake_sh, settings, no_kubeconfig_copy, capsys):
    _sudo_router(fake_sh, readyz_error=error_return("kubectl get --raw=/readyz", b"connection refused"))
    node = NodeInstaller(
        Role.MASTER, settings, probe=FakeProbe(initialized=True), start_phase=Phase.PACKAGES_READY)

    with pytest.raises(InstallerError) as exc_info:
        node.run()

    assert "sudo kubeadm reset -f" in str(exc_info.value)
    assert exc_info.value.phase is Phase.PACKAGES_READY
    calls = sudo_calls(fake_sh)
    assert len([args for args in calls if "--raw=/readyz" in args]) == 3
    assert not [args for args in calls if "apply" in args]
    assert not [args for args in calls if args[:3] == ("kubeadm", "token", "create")]
    assert "__JOIN_CMD__" not in capsys.readouterr().out


def test_master_applies_addons_found_in_project(fake_sh, settings, no_kubeconfig_copy):
    _sudo_router(fake_sh)
    calico = settings.project_root / "TopFull_master" / "calico.yaml"
    calico.parent.mkdir(parents=True)
    calico.write_text("kind: List\n")

    applied = installer.apply_network_addons(settings.project_root)

    assert applied == ["calico"]
    assert any("apply" in args and str(calico) in args for args in sudo_calls(fake_sh))


# ----------------------------------------------------------------------------
# Worker role
# ----------------------------------------------------------------------------

def test_worker_joins_once_then_skips(fake_sh, settings):
    probe = FakeProbe()
    first = NodeInstaller(
        Role.WORKER, settings, probe=probe, join_command="sudo " + JOIN_OUTPUT,
        start_phase=Phase.PACKAGES_READY)

    first.run()
    probe.joined = True
    second = NodeInstaller(
        Role.WORKER, settings, probe=probe, join_command=JOIN_OUTPUT,
        start_phase=Phase.PACKAGES_READY)
    second.run()

    join_calls = [args for args in sudo_calls(fake_sh) if args[:2] == ("bash", "-lc")]
    assert join_calls == [("bash", "-lc", EXPECTED_JOIN)]
    assert second.phase is Phase.ROLE_APPLIED


def test_worker_without_join_command_fails(fake_sh, settings):
    node = NodeInstaller(Role.WORKER, settings, probe=FakeProbe(), start_phase=Phase.PACKAGES_READY)

    result = node.advance()

    assert not result.ok
    assert result.phase is Phase.PACKAGES_READY
    assert "KUBEADM_JOIN_CMD" in result.message
    assert not fake_sh.sudo.called


def test_advance_runs_one_transition(fake_sh, settings, monkeypatch):
    for step in ("disable_swap", "install_docker", "install_cri_dockerd", "configure_cgroup_and_kernel"):
        monkeypatch.setattr(installer, step, MagicMock())
    node = NodeInstaller(Role.WORKER, settings, probe=FakeProbe(joined=True))

    result = node.advance()

    assert result.ok
    assert result.phase is Phase.RUNTIME_READY
    assert node.phase is Phase.RUNTIME_READY


def test_role_applied_is_terminal(fake_sh, settings):
    node = NodeInstaller(Role.WORKER, settings, start_phase=Phase.ROLE_APPLIED)

    assert node.advance().ok
    node.run()
    assert not fake_sh.sudo.called


# ----------------------------------------------------------------------------
# Runtime and packages
# ----------------------------------------------------------------------------

def test_apt_update_failure_refreshes_key_once(fake_sh, monkeypatch):
    refresh = MagicMock()
    monkeypatch.setattr(installer, "install_kubernetes_apt_key", refresh)
    updates = []

    def _sudo(*args, **kwargs):
        if args == ("apt-get", "update"):
            updates.append(args)
            if len(updates) == 1:
                raise error_return("apt-get update", b"NO_PUBKEY")
        return ""
    fake_sh.sudo.side_effect = _sudo

    installer.install_kubernetes_packages("v1.28")

    refresh.assert_called_once_with("v1.28")
    assert len(updates) == 2
    assert ("apt-mark", "hold", "kubelet", "kubeadm", "kubectl") in sudo_calls(fake_sh)


def test_second_apt_update_failure_is_fatal(fake_sh, monkeypatch):
    monkeypatch.setattr(installer, "install_kubernetes_apt_key", MagicMock())

    def _sudo(*args, **kwargs):
        if args == ("apt-get", "update"):
            raise error_return("apt-get update")
        return ""
    fake_sh.sudo.side_effect = _sudo

    with pytest.raises(installer.sh.ErrorReturnCode):
        installer.install_kubernetes_packages("v1.28")


def test_purge_removes_stale_sources_and_indexes(fake_sh, monkeypatch, tmp_path):
    sources_dir = tmp_path / "sources.list.d"
    lists_dir = tmp_path / "lists"
    sources_dir.mkdir()
    lists_dir.mkdir()
    (tmp_path / "sources.list").write_text("deb http://archive.ubuntu.com/ubuntu jammy main\n")
    (sources_dir / "old.list").write_text("deb https://apt.kubernetes.io/ kubernetes-xenial main\n")
    (lists_dir / "pkgs.k8s.io_core_stable_v1.27_deb_Packages").write_text("")
    (lists_dir / "archive.ubuntu.com_jammy_Release").write_text("")
    monkeypatch.setattr(installer, "APT_SOURCES_LIST", tmp_path / "sources.list")
    monkeypatch.setattr(installer, "APT_SOURCES_DIR", sources_dir)
    monkeypatch.setattr(installer, "APT_LISTS_DIR", lists_dir)

    installer.purge_stale_kubernetes_repos()

    calls = sudo_calls(fake_sh)
    edited = [args[-1] for args in calls if args[0] == "sed"]
    assert edited == [str(tmp_path / "sources.list"), str(sources_dir / "old.list")]
    removed = [args for args in calls if args[0] == "rm"]
    assert ("rm", "-f", str(lists_dir / "pkgs.k8s.io_core_stable_v1.27_deb_Packages")) in removed
    assert not any(str(lists_dir / "archive.ubuntu.com_jammy_Release") in args for args in removed)


def test_missing_br_netfilter_is_not_fatal(fake_sh):
    def _sudo(*args, **kwargs):
        if args[0] == "modprobe":
            raise error_return("modprobe br_netfilter")
        return ""
    fake_sh.sudo.side_effect = _sudo

    installer.configure_cgroup_and_kernel()

    assert ("sysctl", "--system") in sudo_calls(fake_sh)


def test_existing_docker_is_not_reinstalled(fake_sh):
    installer.install_docker()

    assert not fake_sh.curl.called
    assert ("systemctl", "enable", "--now", "docker") in sudo_calls(fake_sh)


@pytest.mark.parametrize("overrides, expected", [
    ({"k8s_version_minor": "v1.27"}, "v1.28"),
    ({"k8s_version_minor": "v1.29", "k8s_apt_repo_minor": "v1.26"}, "v1.28"),
    ({"k8s_version_minor": "v1.30"}, "v1.30"),
])
def test_install_packages_uses_remapped_channel(fake_sh, monkeypatch, tmp_path, overrides, expected):
    steps = {}
    for step in ("purge_stale_kubernetes_repos", "configure_kubernetes_repo", "install_kubernetes_packages"):
        steps[step] = MagicMock()
        monkeypatch.setattr(installer, step, steps[step])
    node = NodeInstaller(
        Role.WORKER, NodeSettings(project_root=tmp_path, **overrides), start_phase=Phase.RUNTIME_READY)

    result = node.advance()

    assert result.ok
    assert result.phase is Phase.PACKAGES_READY
    steps["configure_kubernetes_repo"].assert_called_once_with(expected)
    steps["install_kubernetes_packages"].assert_called_once_with(expected)


# ----------------------------------------------------------------------------
# Admin kubeconfig
# ----------------------------------------------------------------------------

def test_unknown_sudo_user_fails_the_step(fake_sh, settings, monkeypatch):
    _sudo_router(fake_sh)
    monkeypatch.setenv("SUDO_USER", "no-such-user-xyz")
    monkeypatch.setattr(installer.pwd, "getpwnam", MagicMock(side_effect=KeyError("no-such-user-xyz")))
    node = NodeInstaller(Role.MASTER, settings, probe=FakeProbe(), start_phase=Phase.PACKAGES_READY)

    result = node.advance()

    assert not result.ok
    assert result.phase is Phase.PACKAGES_READY
    assert "no-such-user-xyz" in result.message


def test_unwritable_home_fails_the_step(fake_sh, settings, monkeypatch, tmp_path):
    _sudo_router(fake_sh)
    home = tmp_path / "home-is-a-file"
    home.write_text("")
    monkeypatch.setenv("SUDO_USER", "operator")
    monkeypatch.setattr(
        installer.pwd, "getpwnam", lambda user: SimpleNamespace(pw_dir=str(home), pw_uid=1000, pw_gid=1000))
    node = NodeInstaller(Role.MASTER, settings, probe=FakeProbe(), start_phase=Phase.PACKAGES_READY)

    result = node.advance()

    assert not result.ok
    assert node.phase is Phase.PACKAGES_READY


def test_admin_kubeconfig_is_owned_by_invoking_user(fake_sh, monkeypatch, tmp_path):
    monkeypatch.setenv("SUDO_USER", "operator")
    monkeypatch.delenv("KUBECONFIG", raising=False)
    monkeypatch.setattr(
        installer.pwd, "getpwnam", lambda user: SimpleNamespace(pw_dir=str(tmp_path), pw_uid=1001, pw_gid=1002))

    dest = installer.install_admin_kubeconfig()

    assert dest == tmp_path / ".kube" / "config"
    assert ("chown", "1001:1002", str(dest)) in sudo_calls(fake_sh)
    assert installer.os.environ["KUBECONFIG"] == str(dest)
