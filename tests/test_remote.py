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


import shlex
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import error_return

from cluster_bootstrap import console
from cluster_bootstrap.remote import (
    RemoteCommandError,
    RemoteRequest,
    build_remote_command,
    copy_to_remote,
    run_remote,
)


def _ssh_printing(*lines, error=None):
    def _ssh(*args, _in=None, _out=None, _err=None, **kwargs):
        for line in lines:
            _out(line)
        if error is not None:
            raise error
        return ""
    return _ssh


def test_arguments_arrive_as_single_parameters():
    join_cmd = "kubeadm join 10.0.0.1:6443 --token a.b --discovery-token-ca-cert-hash sha256:$(rm -rf /)"

    cmd = build_remote_command(["/home/me/My Project", "worker", join_cmd])

    assert shlex.split(cmd) == ["bash", "-s", "--", "/home/me/My Project", "worker", join_cmd]


def test_run_remote_feeds_script_and_collects_stdout(fake_sh, tmp_path):
    fake_sh.ssh.side_effect = _ssh_printing("hello\n", "__JOIN_CMD__=x\n")
    capture = tmp_path / "capture.log"

    result = run_remote(RemoteRequest("ubuntu@node0", "echo hi\n", ("a b",), capture_file=capture))

    assert result.ok
    assert result.stdout == "hello\n__JOIN_CMD__=x\n"
    assert capture.read_text() == result.stdout
    args, kwargs = fake_sh.ssh.call_args
    assert args[-2:] == ("ubuntu@node0", "bash -s -- 'a b'")
    assert kwargs["_in"] == "echo hi\n"


def test_run_remote_failure_raises(fake_sh):
    fake_sh.ssh.side_effect = _ssh_printing("partial\n", error=error_return("ssh node1"))

    with pytest.raises(RemoteCommandError) as exc_info:
        run_remote(RemoteRequest("node1", "exit 1\n"))

    assert exc_info.value.exit_code == 1
    assert exc_info.value.target == "node1"
    assert exc_info.value.stdout == "partial\n"


def test_run_remote_failure_without_check(fake_sh):
    fake_sh.ssh.side_effect = _ssh_printing(error=error_return("ssh node1"))

    result = run_remote(RemoteRequest("node1", "exit 1\n"), check=False)

    assert not result.ok
    assert result.exit_code == 1


def test_copy_creates_parent_then_copies(fake_sh, tmp_path):
    src = tmp_path / "global_config.json"
    src.write_text("{}")

    copy_to_remote("node0", src, "/home/me/TopFullExt/src/global_config.json")

    assert fake_sh.ssh.call_args.args[-1] == "bash -s -- /home/me/TopFullExt/src"
    assert fake_sh.scp.call_args.args[-2:] == (str(src), "node0:/home/me/TopFullExt/src/global_config.json")


def test_streamed_output_stays_in_caller_buffer(fake_sh):
    def _ssh(*args, _in=None, _out=None, _err=None, **kwargs):
        # sh delivers output on its own reader threads.
        reader = threading.Thread(target=lambda: (_out("REMOTE-LINE\n"), _err("remote warning\n")))
        reader.start()
        reader.join()
        return ""

    fake_sh.ssh.side_effect = _ssh

    def _task():
        with console.buffered() as buf:
            run_remote(RemoteRequest("node1", "echo REMOTE-LINE\n"))
        return buf.getvalue()

    with ThreadPoolExecutor(max_workers=1) as executor:
        buffered = executor.submit(_task).result()

    assert "REMOTE-LINE" in buffered
    assert "remote warning" in buffered
