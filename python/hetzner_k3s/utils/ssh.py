"""
hetzner_k3s/utils/ssh.py

Remote command execution on cluster nodes over the OpenSSH client binaries:
  - OpenSSHTransport: one ssh/scp invocation per call, classifying failures
    into an SSHErrorKind instead of raising.
  - SSHConnector.execute: runs a command (after optional uploads) and applies
    the RetryPolicy; fatal kinds raise immediately.
  - SSHConnector.wait_ready: polls the readiness marker written by the node's
    own @reboot cron job.

Nodes with a jump host are reached through `ProxyCommand=ssh -W %h:%p` on the
jump host and addressed by their private IP; all others by their public IP.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Callable, List, Optional, Tuple

from typing_extensions import Protocol

from hetzner_k3s.models.cluster import ServerInstance
from hetzner_k3s.models.ssh import (
    ReadinessPolicy,
    RetryPolicy,
    SSHErrorKind,
    SSHResult,
    SSHSettings,
    SSHTarget,
    Uploads,
)
from hetzner_k3s.utils.async_command_runner import CommandError, run_process
from hetzner_k3s.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

SSH_FAILURE_RETURN_CODE = 255

# Checked in order against lowercased stderr; first match wins.
_STDERR_CLASSIFICATION: List[Tuple[str, SSHErrorKind]] = [
    ("remote host identification has changed", SSHErrorKind.HOST_KEY_MISMATCH),
    ("host key verification failed", SSHErrorKind.HOST_KEY_MISMATCH),
    ("too many authentication failures", SSHErrorKind.AUTH_TOO_MANY_ATTEMPTS),
    ("permission denied", SSHErrorKind.AUTH_FAILED),
    ("network is unreachable", SSHErrorKind.NETWORK_UNREACHABLE),
    ("no route to host", SSHErrorKind.HOST_UNREACHABLE),
    ("connection refused", SSHErrorKind.CONNECTION_REFUSED),
    ("timed out", SSHErrorKind.TIMEOUT),
    ("stdio forwarding failed", SSHErrorKind.PROXY_CONNECT_FAILED),
    ("proxycommand", SSHErrorKind.PROXY_CONNECT_FAILED),
    ("closed by unknown", SSHErrorKind.PROXY_CONNECT_FAILED),
    ("kex_exchange_identification", SSHErrorKind.DISCONNECTED),
    ("connection reset", SSHErrorKind.DISCONNECTED),
    ("connection closed", SSHErrorKind.DISCONNECTED),
    ("broken pipe", SSHErrorKind.DISCONNECTED),
]

AUTH_FAILED_MESSAGE = (
    "Cannot continue: SSH authentication failed. "
    "Please ensure that the private SSH key is correct."
)

HOST_KEY_MISMATCH_MESSAGE = (
    "Cannot continue: Unable to SSH into server with IP {ip} because the existing "
    "fingerprint in the known_hosts file does not match that of the actual host key.\n"
    "This is due to a security check but can also happen when creating a new server "
    "that gets assigned the same IP address as another server you've owned in the past.\n"
    "If you are sure no security is being violated here and you're just creating new "
    "servers, you can either remove the relevant lines from your known_hosts (see IPs "
    "from the cloud console) or disable host key verification by setting the option "
    "'verify_host_key' to false in the configuration file for the cluster."
)


class SSHError(Exception):
    """An SSH-level failure (as opposed to the remote command failing)."""

    def __init__(self, kind: SSHErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class SSHRetriesExhaustedError(SSHError):
    """A transient failure persisted past the retry policy."""


class SSHAuthenticationError(SSHError):
    """The node rejected our key. Never retried."""


class SSHHostKeyMismatchError(SSHError):
    """The node's host key differs from known_hosts. Never retried."""


def classify_ssh_failure(stderr: str) -> SSHErrorKind:
    """
    Map ssh/scp stderr of a failed connection to an SSHErrorKind.

    Unrecognized failures count as IO_ERROR, which is transient.
    """
    lowered = stderr.lower()
    for needle, kind in _STDERR_CLASSIFICATION:
        if needle in lowered:
            return kind
    return SSHErrorKind.IO_ERROR


OutputHandler = Callable[[str], None]


class SSHTransport(Protocol):
    async def run(
        self,
        target: SSHTarget,
        command: str,
        uploads: Uploads,
        on_output: Optional[OutputHandler] = None,
    ) -> SSHResult: ...


class OpenSSHTransport:
    """Drives the local `ssh` and `scp` binaries."""

    def __init__(self, settings: SSHSettings) -> None:
        self._settings = settings

    def _common_options(self, target: SSHTarget) -> List[str]:
        s = self._settings
        opts = [
            "-i",
            s.private_key_path,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={s.connect_timeout}",
            "-o",
            "LogLevel=ERROR",
        ]
        if s.verify_host_key:
            opts += ["-o", "StrictHostKeyChecking=yes"]
        else:
            opts += [
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
            ]
        if target.jump_host:
            opts += ["-o", f"ProxyCommand={self.proxy_command(target.jump_host)}"]
        return opts

    def proxy_command(self, jump_host: str) -> str:
        s = self._settings
        tokens = [
            "ssh",
            "-i",
            s.private_key_path,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={s.connect_timeout}",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=ERROR",
            "-W",
            "%h:%p",
            "-p",
            str(s.port),
            f"{s.user}@{jump_host}",
        ]
        return " ".join(shlex.quote(t) for t in tokens)

    def ssh_args(self, target: SSHTarget, command: str) -> List[str]:
        s = self._settings
        return (
            ["ssh", "-p", str(s.port)]
            + self._common_options(target)
            + [f"{s.user}@{target.host}", command]
        )

    def scp_args(self, target: SSHTarget, local_path: str, remote_path: str) -> List[str]:
        s = self._settings
        return (
            ["scp", "-P", str(s.port)]
            + self._common_options(target)
            + [local_path, f"{s.user}@{target.host}:{remote_path}"]
        )

    async def run(
        self,
        target: SSHTarget,
        command: str,
        uploads: Uploads,
        on_output: Optional[OutputHandler] = None,
    ) -> SSHResult:
        for local_path, remote_path in uploads.items():
            copied = await run_process(self.scp_args(target, local_path, remote_path))
            if copied.return_code != 0:
                return SSHResult(
                    kind=classify_ssh_failure(copied.stderr),
                    return_code=copied.return_code,
                    stderr=copied.stderr,
                )

        result = await run_process(
            self.ssh_args(target, command), on_stdout_line=on_output
        )
        if result.return_code == SSH_FAILURE_RETURN_CODE:
            return SSHResult(
                kind=classify_ssh_failure(result.stderr),
                return_code=result.return_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return SSHResult(
            kind=SSHErrorKind.OK,
            return_code=result.return_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )


class SSHConnector:
    """
    Executes commands on ServerInstances with retry, fatal-error handling and
    jump-host routing.

    Args:
        settings: Key, user and host-key verification settings.
        transport: Defaults to OpenSSHTransport(settings).
        retry_policy: Applied by `execute`.
        readiness: Applied by `wait_ready`.
    """

    def __init__(
        self,
        settings: SSHSettings,
        *,
        transport: Optional[SSHTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        readiness: Optional[ReadinessPolicy] = None,
    ) -> None:
        self._settings = settings
        self._transport: SSHTransport = transport or OpenSSHTransport(settings)
        self._retry_policy = retry_policy or RetryPolicy()
        self._readiness = readiness or ReadinessPolicy()

    @staticmethod
    def target_for(instance: ServerInstance) -> SSHTarget:
        if instance.jump_host:
            if not instance.private_ip:
                raise ValueError(
                    f"Server {instance.name} needs a jump host but has no private IP yet."
                )
            return SSHTarget(host=instance.private_ip, jump_host=instance.jump_host)
        if not instance.public_ipv4:
            raise ValueError(
                f"Server {instance.name} has neither a public IPv4 nor a jump host."
            )
        return SSHTarget(host=instance.public_ipv4)

    def _error_for(self, target: SSHTarget, result: SSHResult) -> SSHError:
        if result.kind is SSHErrorKind.AUTH_FAILED:
            return SSHAuthenticationError(result.kind, AUTH_FAILED_MESSAGE)
        if result.kind is SSHErrorKind.HOST_KEY_MISMATCH:
            return SSHHostKeyMismatchError(
                result.kind, HOST_KEY_MISMATCH_MESSAGE.format(ip=target.host)
            )
        return SSHError(result.kind, result.stderr or result.kind.value)

    async def execute(
        self,
        instance: ServerInstance,
        command: str,
        *,
        uploads: Optional[Uploads] = None,
        print_output: bool = False,
        check: bool = False,
    ) -> str:
        """
        Run `command` through the remote shell of `instance`.

        Args:
            instance: The node to run on.
            command: Shell command line, evaluated by the remote shell.
            uploads: Local path -> remote path, copied before the command.
            print_output: Echo the remote stdout locally, line by line as it
                arrives.
            check: Raise CommandError if the remote command exits non-zero.

        Returns:
            Remote stdout without its trailing newline.

        Raises:
            SSHAuthenticationError, SSHHostKeyMismatchError: Immediately.
            SSHRetriesExhaustedError: When a retryable failure persists.
            CommandError: If `check` and the remote exit status is non-zero.
        """
        target = self.target_for(instance)
        policy = self._retry_policy

        def _retryable(exc: Exception) -> bool:
            return isinstance(exc, SSHError) and policy.is_retryable(exc.kind)

        @async_retry(
            retries=policy.max_retries + 1, delay=policy.backoff, retry_if=_retryable
        )
        async def _attempt() -> SSHResult:
            result = await self._transport.run(
                target, command, uploads or {}, print if print_output else None
            )
            if result.kind is not SSHErrorKind.OK:
                logger.debug(
                    "SSH CONNECTION DEBUG: %s (%s): %s",
                    instance.name,
                    result.kind.value,
                    result.stderr,
                )
                raise self._error_for(target, result)
            return result

        try:
            result = await _attempt()
        except SSHError as exc:
            if _retryable(exc):
                raise SSHRetriesExhaustedError(
                    exc.kind,
                    f"Giving up on {instance.name} after {policy.max_retries} retries: {exc}",
                ) from exc
            raise

        if check and result.return_code != 0:
            raise CommandError(
                f"Command on {instance.name} exited with {result.return_code}.",
                result.return_code,
                result.stderr,
            )
        return result.stdout

    async def wait_ready(self, instance: ServerInstance) -> None:
        """
        Block until the readiness marker on `instance` contains 'true'.

        Each attempt polls inside its own timeout; a timeout or an exhausted
        transient failure restarts the wait, up to `max_retries` times.

        Raises:
            SSHRetriesExhaustedError: If the node never becomes ready.
            SSHAuthenticationError, SSHHostKeyMismatchError: Immediately.
        """
        readiness = self._readiness
        print(f"Waiting for server {instance.name} to be up...")

        async def _poll() -> None:
            while True:
                output = await self.execute(instance, f"cat {readiness.marker_path}")
                if output.strip() == "true":
                    return
                await asyncio.sleep(readiness.poll_interval)

        for attempt in range(readiness.max_retries + 1):
            try:
                await asyncio.wait_for(_poll(), timeout=readiness.attempt_timeout)
            except (asyncio.TimeoutError, SSHRetriesExhaustedError) as exc:
                logger.debug(
                    "Readiness attempt %d for %s failed: %r", attempt + 1, instance.name, exc
                )
                continue
            print(f"...server {instance.name} is now up.")
            return

        raise SSHRetriesExhaustedError(
            SSHErrorKind.TIMEOUT,
            f"Server {instance.name} did not become ready after "
            f"{readiness.max_retries} retries.",
        )
