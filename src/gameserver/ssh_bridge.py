#!/usr/bin/env python3
"""
SSH Transfer Bridge: Remote Commands and File Export for Game Servers

Runs the pre-stop / restart hooks on a live instance and pulls save data
off it before the instance is snapshotted and destroyed.

Security model:
- Key-based auth only (no passwords stored)
- Private key loaded from file or env var
- Command audit logging (every exec is recorded)
- Timeout on connect and commands (no hanging connections)

Every operation opens its own connection and closes it on every exit path,
including failures halfway through a transfer.

Usage:
    bridge = RemoteTransferClient()
    conn = ConnectionOptions(host="203.0.113.10", user="root")
    bridge.execute_command(conn, "systemctl stop game")
    bridge.download_directory_as_zip(conn, "/srv/game/world", "/tmp/world.zip")
"""

import io
import logging
import os
import posixpath
import stat
import time
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Iterator, Tuple

import paramiko

from .errors import RemoteCommandError, RemoteReadError, LocalWriteError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ConnectionOptions:
    """Where and as whom to connect."""
    host: str
    user: str
    key_path: Optional[str] = None
    port: int = 22


@dataclass
class ExecResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RemoteTransferClient:
    """
    Per-operation SSH/SFTP client.

    Auth priority:
    1. ConnectionOptions.key_path
    2. Explicit key_path parameter
    3. SSH_PRIVATE_KEY_PATH env var
    4. SSH_PRIVATE_KEY env var (key content as string)
    5. Default ~/.ssh/id_ed25519 or ~/.ssh/id_rsa
    """

    DEFAULT_TIMEOUT = 30

    def __init__(self, key_path: str = None, key_content: str = None, timeout: int = None):
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._key_path = key_path
        self._key_content = key_content
        self._exec_log: List[ExecResult] = []

    # ── Keys ─────────────────────────────────────────────────────

    def _load_key(self, key_path: str = None):
        """Resolve the private key for a connection."""
        for candidate in (key_path, self._key_path, os.environ.get("SSH_PRIVATE_KEY_PATH", "")):
            if candidate and os.path.isfile(candidate):
                return self._read_key_file(candidate)

        content = self._key_content or os.environ.get("SSH_PRIVATE_KEY", "")
        if content:
            return self._parse_key_string(content)

        for default in ["~/.ssh/id_ed25519", "~/.ssh/id_rsa"]:
            expanded = os.path.expanduser(default)
            if os.path.isfile(expanded):
                return self._read_key_file(expanded)

        return None

    @staticmethod
    def _read_key_file(path: str):
        for key_class in [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]:
            try:
                return key_class.from_private_key_file(path)
            except (paramiko.SSHException, ValueError):
                continue
        logger.error(f"Could not parse SSH key: {path}")
        return None

    @staticmethod
    def _parse_key_string(content: str):
        key_file = io.StringIO(content)
        for key_class in [paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey]:
            try:
                key_file.seek(0)
                return key_class.from_private_key(key_file)
            except (paramiko.SSHException, ValueError):
                continue
        logger.error("Could not parse SSH key from string")
        return None

    # ── Connection Management ────────────────────────────────────

    def _connect(self, conn: ConnectionOptions) -> paramiko.SSHClient:
        """Open a connection or raise OSError / paramiko.SSHException."""
        key = self._load_key(conn.key_path)
        if key is None:
            raise paramiko.SSHException("No SSH private key available")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=conn.host,
                port=conn.port,
                username=conn.user,
                pkey=key,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        logger.debug(f"SSH connected to {conn.user}@{conn.host}:{conn.port}")
        return client

    @contextmanager
    def _session(self, conn: ConnectionOptions) -> Iterator[paramiko.SSHClient]:
        client = self._connect(conn)
        try:
            yield client
        finally:
            client.close()
            logger.debug(f"SSH connection to {conn.host} closed")

    @contextmanager
    def _sftp(self, conn: ConnectionOptions) -> Iterator[paramiko.SFTPClient]:
        try:
            client = self._connect(conn)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteReadError(f"SSH connection error: {e}")
        try:
            try:
                sftp = client.open_sftp()
            except (paramiko.SSHException, OSError) as e:
                raise RemoteReadError(f"SFTP channel error: {e}")
            try:
                yield sftp
            finally:
                sftp.close()
        finally:
            client.close()
            logger.debug(f"SSH connection to {conn.host} closed")

    # ── Command Execution ────────────────────────────────────────

    def execute_command(self, conn: ConnectionOptions, command: str) -> str:
        """
        Run one command and return its stdout.

        Raises:
            RemoteCommandError: non-zero exit, or the connection could not
                be established / broke mid-command (exit_code -1).
        """
        start = time.time()
        try:
            with self._session(conn) as client:
                _, stdout_ch, stderr_ch = client.exec_command(command, timeout=self.timeout)
                exit_code = stdout_ch.channel.recv_exit_status()
                stdout = stdout_ch.read().decode("utf-8", errors="replace")
                stderr = stderr_ch.read().decode("utf-8", errors="replace")
        except (paramiko.SSHException, OSError) as e:
            self._record(conn, command, -1, "", f"SSH connection error: {e}", start)
            raise RemoteCommandError(command, -1, f"SSH connection error: {e}")

        result = self._record(conn, command, exit_code, stdout, stderr, start)
        if not result.success:
            raise RemoteCommandError(command, exit_code, stderr.strip())
        return stdout

    def _record(self, conn, command, exit_code, stdout, stderr, start) -> ExecResult:
        result = ExecResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0,
            duration_ms=round((time.time() - start) * 1000, 1),
            host=conn.host,
        )
        self._exec_log.append(result)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    # ── File Transfer ────────────────────────────────────────────

    def download_file(self, conn: ConnectionOptions, remote_path: str, local_path: str) -> None:
        """Stream one remote file to local_path. Partial files are removed on failure."""
        with self._sftp(conn) as sftp:
            try:
                remote = sftp.open(remote_path, "rb")
            except (paramiko.SSHException, OSError) as e:
                raise RemoteReadError(f"File read error: {remote_path}: {e}")
            try:
                try:
                    local = open(local_path, "wb")
                except OSError as e:
                    raise LocalWriteError(f"File write error: {local_path}: {e}")
                try:
                    with local:
                        _copy_stream(remote, local, remote_path, local_path)
                except (RemoteReadError, LocalWriteError):
                    _discard(local_path)
                    raise
            finally:
                remote.close()
        logger.info(f"Downloaded {conn.host}:{remote_path} -> {local_path}")

    def download_directory_as_zip(
        self, conn: ConnectionOptions, remote_dir: str, local_zip_path: str,
    ) -> int:
        """
        Archive a remote directory tree into a local zip file.

        Entries are rooted at the directory's basename, as `zip -r` run in
        the parent directory would produce. Returns the number of files.
        """
        remote_dir = remote_dir.rstrip("/") or "/"
        root = posixpath.basename(remote_dir) or "root"

        with self._sftp(conn) as sftp:
            try:
                archive = zipfile.ZipFile(local_zip_path, "w", compression=zipfile.ZIP_DEFLATED)
            except OSError as e:
                raise LocalWriteError(f"File write error: {local_zip_path}: {e}")
            count = 0
            try:
                with archive:
                    for remote_path, arcname, is_dir in _walk(sftp, remote_dir, root):
                        if is_dir:
                            archive.writestr(arcname + "/", b"")
                            continue
                        try:
                            remote = sftp.open(remote_path, "rb")
                        except (paramiko.SSHException, OSError) as e:
                            raise RemoteReadError(f"File read error: {remote_path}: {e}")
                        try:
                            with archive.open(arcname, "w") as entry:
                                _copy_stream(remote, entry, remote_path, local_zip_path)
                        finally:
                            remote.close()
                        count += 1
            except (RemoteReadError, LocalWriteError):
                _discard(local_zip_path)
                raise
            except paramiko.SSHException as e:
                _discard(local_zip_path)
                raise RemoteReadError(f"Directory read error: {remote_dir}: {e}")
            except OSError as e:
                _discard(local_zip_path)
                raise LocalWriteError(f"File write error: {local_zip_path}: {e}")

        logger.info(f"Archived {count} file(s) from {conn.host}:{remote_dir} -> {local_zip_path}")
        return count

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent command execution log."""
        entries = self._exec_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def __repr__(self) -> str:
        return f"RemoteTransferClient(commands={len(self._exec_log)})"


def _walk(sftp, remote_dir: str, arc_root: str) -> Iterator[Tuple[str, str, bool]]:
    """Yield (remote_path, archive_name, is_dir) depth-first."""
    try:
        entries = sftp.listdir_attr(remote_dir)
    except (paramiko.SSHException, OSError) as e:
        raise RemoteReadError(f"Directory read error: {remote_dir}: {e}")
    if not entries:
        yield remote_dir, arc_root, True
        return
    for attr in sorted(entries, key=lambda a: a.filename):
        remote_path = posixpath.join(remote_dir, attr.filename)
        arcname = posixpath.join(arc_root, attr.filename)
        if stat.S_ISDIR(attr.st_mode or 0):
            yield from _walk(sftp, remote_path, arcname)
        else:
            yield remote_path, arcname, False


def _copy_stream(remote, local, remote_path: str, local_path: str) -> None:
    while True:
        try:
            chunk = remote.read(CHUNK_SIZE)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteReadError(f"File read error: {remote_path}: {e}")
        if not chunk:
            return
        try:
            local.write(chunk)
        except OSError as e:
            raise LocalWriteError(f"File write error: {local_path}: {e}")


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial download {path}: {e}")
