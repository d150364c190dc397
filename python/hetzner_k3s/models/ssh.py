"""
hetzner_k3s/models/ssh.py

Pydantic models for the SSH layer:
 - SSHSettings: how we authenticate and verify hosts
 - SSHErrorKind: classification of a transport outcome
 - RetryPolicy / ReadinessPolicy: retry behaviour expressed as data
 - SSHTarget / SSHResult: one transport call's input and outcome
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field, field_validator


class SSHErrorKind(str, Enum):
    """Outcome of a single ssh/scp invocation."""

    OK = "ok"
    TIMEOUT = "timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    HOST_UNREACHABLE = "host_unreachable"
    CONNECTION_REFUSED = "connection_refused"
    IO_ERROR = "io_error"
    PROXY_CONNECT_FAILED = "proxy_connect_failed"
    DISCONNECTED = "disconnected"
    AUTH_TOO_MANY_ATTEMPTS = "auth_too_many_attempts"
    AUTH_FAILED = "auth_failed"
    HOST_KEY_MISMATCH = "host_key_mismatch"


TRANSIENT_KINDS: FrozenSet[SSHErrorKind] = frozenset(
    {
        SSHErrorKind.TIMEOUT,
        SSHErrorKind.NETWORK_UNREACHABLE,
        SSHErrorKind.HOST_UNREACHABLE,
        SSHErrorKind.CONNECTION_REFUSED,
        SSHErrorKind.IO_ERROR,
        SSHErrorKind.PROXY_CONNECT_FAILED,
        SSHErrorKind.DISCONNECTED,
    }
)

FATAL_KINDS: FrozenSet[SSHErrorKind] = frozenset(
    {SSHErrorKind.AUTH_FAILED, SSHErrorKind.HOST_KEY_MISMATCH}
)


class SSHSettings(BaseModel):
    """
    Connection settings shared by every node of a cluster.

    Attributes:
        private_key_path: Local path of the private key used for root login.
        user: Remote user (the cloud images only allow root with a key).
        port: SSH port on the nodes and on the jump host.
        verify_host_key: If True, strict host key checking against the user's
            known_hosts; if False, host keys are neither checked nor recorded.
        connect_timeout: Seconds passed to ssh's ConnectTimeout option.
    """

    private_key_path: str
    user: str = "root"
    port: int = Field(default=22, ge=1, le=65535)
    verify_host_key: bool = False
    connect_timeout: int = Field(default=10, ge=1)

    @field_validator("private_key_path")
    @classmethod
    def validate_private_key_path(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key_path must be a non-empty string")
        return val


class RetryPolicy(BaseModel):
    """
    Which failures `execute` retries, how often, and how long it waits.

    `max_retries` counts retries after the first attempt, so a call that keeps
    failing transiently is attempted `max_retries + 1` times.
    """

    max_retries: int = Field(default=15, ge=0)
    backoff: float = Field(default=1.0, ge=0.0)
    retryable_kinds: FrozenSet[SSHErrorKind] = TRANSIENT_KINDS | frozenset(
        {SSHErrorKind.AUTH_TOO_MANY_ATTEMPTS}
    )

    def is_retryable(self, kind: SSHErrorKind) -> bool:
        return kind in self.retryable_kinds

    class Config:
        frozen = True


class ReadinessPolicy(BaseModel):
    """Two-level readiness wait: poll inside a per-attempt timeout, restart on failure."""

    marker_path: str = "/etc/ready"
    poll_interval: float = Field(default=3.0, ge=0.0)
    attempt_timeout: float = Field(default=10.0, gt=0.0)
    max_retries: int = Field(default=15, ge=0)

    class Config:
        frozen = True


class SSHTarget(BaseModel):
    """Resolved address for one connection: direct, or via a jump host."""

    host: str
    jump_host: Optional[str] = None


class SSHResult(BaseModel):
    """
    Outcome of a transport call.

    `kind` is OK whenever the ssh session itself worked; the remote command's
    own exit status is in `return_code`.
    """

    kind: SSHErrorKind
    return_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""


Uploads = Dict[str, str]
"""Local path -> remote path, copied before the command runs."""
