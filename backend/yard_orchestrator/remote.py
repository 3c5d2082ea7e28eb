"""Remote command execution against managed hosts.

Jobs talk to hosts through ``get_runner(host).execute(...)``; the transport
(SSH or AWS SSM) is picked from the host record. A non-zero exit is a normal
result, not an exception. ConnectionFault means the channel never came up or
dropped; a command that outlives its timeout raises CommandFault.
"""

import io
import logging
import shlex
import socket
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .errors import CommandFault, ConnectionFault
from .models import Host

logger = logging.getLogger(__name__)

OUTPUT_TAIL = 4000


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteRunner(Protocol):
    def execute(self, host: Host, command: str, timeout: int, user: Optional[str] = None) -> CommandResult: ...


def as_user(command: str, user: Optional[str], login_user: str) -> str:
    if not user or user == login_user:
        return command
    return f"sudo -u {shlex.quote(user)} -H bash -lc {shlex.quote(command)}"


class SshRunner:
    CHUNK = 32768

    def __init__(self, connect_timeout: Optional[int] = None, poll_interval: float = 0.1):
        self.connect_timeout = connect_timeout or getattr(settings, "SHIPYARD_SSH_CONNECT_TIMEOUT", 10)
        self.poll_interval = poll_interval

    def _load_key(self, material: str):
        for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
            try:
                return key_class.from_private_key(io.StringIO(material))
            except paramiko.SSHException:
                continue
        raise ConnectionFault("Unsupported or unreadable SSH private key")

    def _connect(self, host: Host):
        if not host.public_ip:
            raise ConnectionFault(f"Host {host.name} has no public address")
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = self._load_key(host.ssh_private_key) if host.ssh_private_key else None
        try:
            client.connect(
                hostname=host.public_ip,
                port=host.ssh_port,
                username=host.ssh_user,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=pkey is None,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ConnectionFault(f"SSH connection to {host.public_ip}:{host.ssh_port} failed: {exc}") from exc
        return client

    def execute(self, host: Host, command: str, timeout: int, user: Optional[str] = None) -> CommandResult:
        remote_command = as_user(command, user, host.ssh_user)
        started = time.monotonic()
        deadline = started + timeout
        client = self._connect(host)
        out, err = bytearray(), bytearray()
        try:
            channel = client.get_transport().open_session()
            channel.exec_command(remote_command)
            while True:
                idle = True
                if channel.recv_ready():
                    out = (out + channel.recv(self.CHUNK))[-OUTPUT_TAIL * 4 :]
                    idle = False
                if channel.recv_stderr_ready():
                    err = (err + channel.recv_stderr(self.CHUNK))[-OUTPUT_TAIL * 4 :]
                    idle = False
                if idle and channel.exit_status_ready():
                    break
                if time.monotonic() > deadline:
                    channel.close()
                    raise CommandFault(command, None, reason=f"timed out after {timeout}s")
                if idle:
                    time.sleep(self.poll_interval)
            exit_code = channel.recv_exit_status()
        except socket.timeout as exc:
            raise CommandFault(command, None, reason=f"timed out after {timeout}s") from exc
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectionFault(f"SSH channel to {host.public_ip} dropped: {exc}") from exc
        finally:
            client.close()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug("ssh %s exit=%s in %sms: %s", host.public_ip, exit_code, duration_ms, command[:120])
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")
        return CommandResult(exit_code, stdout[-OUTPUT_TAIL:], stderr[-OUTPUT_TAIL:], duration_ms)


class SsmRunner:
    """Runs commands through AWS Systems Manager for hosts without inbound SSH."""

    TERMINAL = {"Success", "Failed", "TimedOut", "Cancelled"}

    def __init__(self, poll_interval: float = 2.0):
        self.poll_interval = poll_interval

    def execute(self, host: Host, command: str, timeout: int, user: Optional[str] = None) -> CommandResult:
        if not host.aws_instance_id or not host.aws_region:
            raise ConnectionFault(f"Host {host.name} has no SSM instance id or region")
        remote_command = as_user(command, user, "root")
        started = time.monotonic()
        ssm = boto3.client("ssm", region_name=host.aws_region)
        try:
            cmd = ssm.send_command(
                InstanceIds=[host.aws_instance_id],
                DocumentName="AWS-RunShellScript",
                Parameters={"commands": [remote_command], "executionTimeout": [str(timeout)]},
                TimeoutSeconds=max(30, timeout),
            )
        except (ClientError, BotoCoreError) as exc:
            raise ConnectionFault(f"SSM send_command to {host.aws_instance_id} failed: {exc}") from exc
        command_id = cmd["Command"]["CommandId"]
        deadline = started + timeout + 30
        out = None
        while time.monotonic() < deadline:
            try:
                out = ssm.get_command_invocation(CommandId=command_id, InstanceId=host.aws_instance_id)
            except ClientError:
                time.sleep(1)
                continue
            except BotoCoreError as exc:
                raise ConnectionFault(f"SSM invocation lookup failed: {exc}") from exc
            if out.get("Status") in self.TERMINAL:
                break
            time.sleep(self.poll_interval)
        if out is None or out.get("Status") not in self.TERMINAL:
            raise CommandFault(command, None, reason=f"timed out after {timeout}s")
        stdout = (out.get("StandardOutputContent") or "")[-OUTPUT_TAIL:]
        stderr = (out.get("StandardErrorContent") or "")[-OUTPUT_TAIL:]
        if out.get("Status") == "TimedOut":
            raise CommandFault(command, None, stdout, stderr, reason=f"timed out after {timeout}s")
        exit_code = out.get("ResponseCode")
        if exit_code is None or exit_code < 0:
            exit_code = 0 if out.get("Status") == "Success" else 1
        return CommandResult(int(exit_code), stdout, stderr, int((time.monotonic() - started) * 1000))


def get_runner(host: Host) -> RemoteRunner:
    if host.transport == "ssm":
        return SsmRunner()
    return SshRunner()


def run_checked(host: Host, command: str, timeout: Optional[int] = None, user: Optional[str] = None) -> CommandResult:
    """Execute and raise CommandFault unless the command exits zero."""
    timeout = timeout or settings.SHIPYARD_COMMAND_TIMEOUT
    result = get_runner(host).execute(host, command, timeout, user=user)
    if not result.ok:
        raise CommandFault(command, result.exit_code, result.stdout, result.stderr)
    return result
