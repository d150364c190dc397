"""
Tests for the SSH layer: failure classification, retry ceiling, fatal errors,
readiness waits and jump-host routing.
"""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from hetzner_k3s.models.ssh import SSHErrorKind, SSHResult, SSHSettings, SSHTarget
from hetzner_k3s.tests.fakes import FakeTransport, failure, fast_connector, ok, server
from hetzner_k3s.utils.async_command_runner import CommandError, run_process
from hetzner_k3s.utils.ssh import (
    OpenSSHTransport,
    SSHAuthenticationError,
    SSHConnector,
    SSHHostKeyMismatchError,
    SSHRetriesExhaustedError,
    classify_ssh_failure,
)


@pytest.mark.parametrize(
    "stderr, kind",
    [
        ("ssh: connect to host 203.0.113.5 port 22: Connection timed out", SSHErrorKind.TIMEOUT),
        ("ssh: connect to host 203.0.113.5 port 22: Connection refused", SSHErrorKind.CONNECTION_REFUSED),
        ("ssh: connect to host 10.0.0.3 port 22: No route to host", SSHErrorKind.HOST_UNREACHABLE),
        ("ssh: connect to host 10.0.0.3 port 22: Network is unreachable", SSHErrorKind.NETWORK_UNREACHABLE),
        ("root@203.0.113.5: Permission denied (publickey).", SSHErrorKind.AUTH_FAILED),
        (
            "Received disconnect from 203.0.113.5 port 22:2: Too many authentication failures",
            SSHErrorKind.AUTH_TOO_MANY_ATTEMPTS,
        ),
        (
            "@@@ WARNING: REMOTE HOST IDENTIFICATION HAS CHANGED! @@@",
            SSHErrorKind.HOST_KEY_MISMATCH,
        ),
        ("channel 0: open failed: connect failed\nstdio forwarding failed", SSHErrorKind.PROXY_CONNECT_FAILED),
        ("kex_exchange_identification: Connection closed by remote host", SSHErrorKind.DISCONNECTED),
        ("something nobody expected", SSHErrorKind.IO_ERROR),
    ],
)
def test_classify_ssh_failure(stderr: str, kind: SSHErrorKind) -> None:
    assert classify_ssh_failure(stderr) is kind


def test_transient_failure_gives_up_after_fifteen_retries() -> None:
    transport = FakeTransport(lambda target, command: failure(SSHErrorKind.TIMEOUT))
    connector = fast_connector(transport)

    with pytest.raises(SSHRetriesExhaustedError):
        asyncio.run(connector.execute(server(1, "prod-cpx21-master1"), "uptime"))

    assert len(transport.calls) == 16


def test_transient_failure_then_success_returns_output() -> None:
    results = [failure(SSHErrorKind.CONNECTION_REFUSED)] * 3 + [ok("up 3 days")]
    transport = FakeTransport(lambda target, command: results.pop(0))
    connector = fast_connector(transport)

    output = asyncio.run(connector.execute(server(1, "prod-cpx21-master1"), "uptime"))

    assert output == "up 3 days"
    assert len(transport.calls) == 4


def test_authentication_failure_is_not_retried() -> None:
    transport = FakeTransport(lambda target, command: failure(SSHErrorKind.AUTH_FAILED))
    connector = fast_connector(transport)

    with pytest.raises(SSHAuthenticationError) as excinfo:
        asyncio.run(connector.execute(server(1, "prod-cpx21-master1"), "uptime"))

    assert "private SSH key" in str(excinfo.value)
    assert len(transport.calls) == 1


def test_host_key_mismatch_is_not_retried_and_explains_the_fix() -> None:
    transport = FakeTransport(
        lambda target, command: failure(SSHErrorKind.HOST_KEY_MISMATCH)
    )
    connector = fast_connector(transport)

    with pytest.raises(SSHHostKeyMismatchError) as excinfo:
        asyncio.run(connector.execute(server(7, "prod-cpx21-master1"), "uptime"))

    message = str(excinfo.value)
    assert "203.0.113.7" in message
    assert "verify_host_key" in message
    assert len(transport.calls) == 1


def test_too_many_authentication_attempts_is_retried() -> None:
    results = [failure(SSHErrorKind.AUTH_TOO_MANY_ATTEMPTS)] * 2 + [ok("done")]
    transport = FakeTransport(lambda target, command: results.pop(0))
    connector = fast_connector(transport)

    assert asyncio.run(connector.execute(server(1, "prod-cpx21-master1"), "true")) == "done"
    assert len(transport.calls) == 3


def test_check_raises_on_remote_failure() -> None:
    transport = FakeTransport(
        lambda target, command: SSHResult(kind=SSHErrorKind.OK, return_code=1)
    )
    connector = fast_connector(transport)

    with pytest.raises(CommandError) as excinfo:
        asyncio.run(
            connector.execute(server(1, "prod-cpx21-master1"), "false", check=True)
        )
    assert excinfo.value.return_code == 1


def test_print_output_streams_each_line(capsys: pytest.CaptureFixture) -> None:
    transport = FakeTransport(lambda target, command: ok("[INFO] Downloading\n[INFO] Starting k3s"))
    connector = fast_connector(transport)

    output = asyncio.run(
        connector.execute(server(1, "prod-cpx21-master1"), "install", print_output=True)
    )

    assert capsys.readouterr().out == "[INFO] Downloading\n[INFO] Starting k3s\n"
    assert output == "[INFO] Downloading\n[INFO] Starting k3s"


def test_output_is_not_printed_by_default(capsys: pytest.CaptureFixture) -> None:
    connector = fast_connector(FakeTransport(lambda target, command: ok("quiet")))

    asyncio.run(connector.execute(server(1, "prod-cpx21-master1"), "true"))

    assert capsys.readouterr().out == ""


def test_run_process_passes_each_stdout_line() -> None:
    lines: List[str] = []

    result = asyncio.run(
        run_process(["sh", "-c", "echo first; echo second"], on_stdout_line=lines.append)
    )

    assert lines == ["first", "second"]
    assert result.stdout == "first\nsecond"
    assert result.return_code == 0


def test_jump_host_routes_through_private_ip() -> None:
    transport = FakeTransport()
    connector = fast_connector(transport)
    worker = server(3, "prod-cpx21-pool-small-worker1", jump_host="203.0.113.1")

    asyncio.run(connector.execute(worker, "hostname"))

    target = transport.calls[0][0]
    assert target == SSHTarget(host="10.0.0.4", jump_host="203.0.113.1")


def test_direct_connection_uses_public_ip() -> None:
    assert SSHConnector.target_for(server(1, "prod-cpx21-master1")) == SSHTarget(
        host="203.0.113.1"
    )


def test_node_without_public_ip_or_jump_host_is_rejected() -> None:
    with pytest.raises(ValueError):
        SSHConnector.target_for(server(2, "prod-cpx21-master2", public=False))


def test_wait_ready_polls_until_marker_is_true() -> None:
    markers = ["", "", "true"]

    def handler(target: SSHTarget, command: str) -> SSHResult:
        return ok(markers.pop(0))

    transport = FakeTransport(handler)
    connector = fast_connector(transport)

    asyncio.run(connector.wait_ready(server(1, "prod-cpx21-master1")))

    assert transport.commands() == ["cat /etc/ready"] * 3


def test_wait_ready_restarts_on_exhausted_retries_then_gives_up() -> None:
    transport = FakeTransport(
        lambda target, command: failure(SSHErrorKind.NETWORK_UNREACHABLE)
    )
    connector = fast_connector(transport, max_retries=0, readiness_retries=2)

    with pytest.raises(SSHRetriesExhaustedError):
        asyncio.run(connector.wait_ready(server(1, "prod-cpx21-master1")))

    # One attempt per readiness try: the initial one plus two restarts.
    assert len(transport.calls) == 3


def test_wait_ready_times_out_when_marker_never_appears() -> None:
    transport = FakeTransport(lambda target, command: ok("false"))
    connector = fast_connector(
        transport, readiness_retries=1, poll_interval=0.01, attempt_timeout=0.05
    )

    with pytest.raises(SSHRetriesExhaustedError):
        asyncio.run(connector.wait_ready(server(1, "prod-cpx21-master1")))


def test_wait_ready_does_not_absorb_fatal_errors() -> None:
    transport = FakeTransport(lambda target, command: failure(SSHErrorKind.AUTH_FAILED))
    connector = fast_connector(transport)

    with pytest.raises(SSHAuthenticationError):
        asyncio.run(connector.wait_ready(server(1, "prod-cpx21-master1")))


def test_openssh_arguments_with_jump_host() -> None:
    transport = OpenSSHTransport(SSHSettings(private_key_path="/keys/id_ed25519"))
    args: List[str] = transport.ssh_args(
        SSHTarget(host="10.0.0.3", jump_host="203.0.113.1"), "hostname"
    )

    assert args[0] == "ssh"
    assert args[-2:] == ["root@10.0.0.3", "hostname"]
    assert "StrictHostKeyChecking=no" in args
    assert "UserKnownHostsFile=/dev/null" in args
    proxy = [a for a in args if a.startswith("ProxyCommand=")]
    assert len(proxy) == 1
    assert "-W %h:%p" in proxy[0]
    assert proxy[0].endswith("root@203.0.113.1")


def test_openssh_arguments_with_strict_host_keys() -> None:
    transport = OpenSSHTransport(
        SSHSettings(private_key_path="/keys/id_ed25519", verify_host_key=True)
    )
    args = transport.scp_args(SSHTarget(host="203.0.113.1"), "/tmp/k3s", "/usr/local/bin/k3s")

    assert args[0] == "scp"
    assert "StrictHostKeyChecking=yes" in args
    assert "UserKnownHostsFile=/dev/null" not in args
    assert not any(a.startswith("ProxyCommand=") for a in args)
    assert args[-1] == "root@203.0.113.1:/usr/local/bin/k3s"
