#!/usr/bin/env python3
"""
Lifecycle Orchestrator: start and stop game servers on Vultr

Start:  resolve profile -> reuse a running instance, or create one from the
        newest snapshot -> wait until it is ready.
Stop:   resolve profile -> find the instance -> (stop game -> export save
        files -> restart game) -> snapshot -> wait -> re-verify the snapshot
        -> prune old snapshots -> delete the instance.

The instance is only ever deleted after the new snapshot has been found
again in a fresh listing with status "complete". Any failure before that
point leaves the instance running and is reported as "not deleted, verify
manually". Exports, hooks and even an extra snapshot are acceptable leftovers
of a failed stop; a lost instance is not.

Usage:
    orch = LifecycleOrchestrator.from_config("servers.yml")
    orch.start("alpha")
    orch.stop("alpha")
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Callable

from .artifacts import ArtifactStore, DownloadedArtifact
from .config import ServerProfile, ServerRegistry, Settings, load_servers
from .errors import (
    GameServerError, NotRunning, NoSnapshotAvailable, RemoteCommandError,
    SnapshotUnverified,
)
from .poller import PollPolicy, ReadinessPoller, wait_for_instance_ready, wait_for_snapshot_ready
from .ssh_bridge import ConnectionOptions, RemoteTransferClient
from .vultr import Instance, Snapshot, VultrClient

logger = logging.getLogger(__name__)


# ── Data Models ──────────────────────────────────────────────────

class Workflow(Enum):
    START = "start"
    STOP = "stop"


class StartState(Enum):
    RESOLVING = "resolving"
    CHECKING_EXISTING = "checking_existing"
    SELECTING_SNAPSHOT = "selecting_snapshot"
    CREATING = "creating"
    WAITING_READY = "waiting_ready"
    DONE = "done"
    FAILED = "failed"


class StopState(Enum):
    RESOLVING = "resolving"
    CHECKING_RUNNING = "checking_running"
    PRE_STOP_HOOK = "pre_stop_hook"
    EXPORTING_ARTIFACTS = "exporting_artifacts"
    POST_STOP_HOOK = "post_stop_hook"
    SNAPSHOTTING = "snapshotting"
    VERIFYING_SNAPSHOT = "verifying_snapshot"
    PRUNING_SNAPSHOTS = "pruning_snapshots"
    DELETING_INSTANCE = "deleting_instance"
    DONE = "done"
    FAILED = "failed"


class StartOutcome(Enum):
    STARTED = "started"
    ALREADY_RUNNING = "already_running"


@dataclass
class ProgressEvent:
    """One state transition of a workflow run."""
    server: str
    workflow: str
    state: str
    message: str = ""
    success: bool = True
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StartResult:
    server: str
    outcome: StartOutcome
    address: str
    instance_id: str
    snapshot_description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        return d


@dataclass
class StopResult:
    server: str
    instance_id: str
    snapshot_id: str
    snapshot_description: str
    deleted_snapshots: List[str] = field(default_factory=list)
    artifacts: List[DownloadedArtifact] = field(default_factory=list)
    failed_artifacts: List[str] = field(default_factory=list)
    restart_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["artifacts"] = [a.to_dict() for a in self.artifacts]
        return d


@dataclass
class ServerStatus:
    name: str
    label: str
    description: str
    running: bool
    address: str = ""
    region: str = ""
    plan: str = ""
    snapshot_count: Optional[int] = None
    latest_snapshot: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StopCapabilities:
    """What a stop may do on the live host, decided once per run."""
    remote_managed: bool
    restart: bool

    @classmethod
    def of(cls, profile: ServerProfile) -> "StopCapabilities":
        managed = bool(profile.ssh_user and profile.artifacts and profile.stop_command)
        return cls(remote_managed=managed, restart=managed and bool(profile.start_command))


def snapshot_description(prefix: str, now: datetime) -> str:
    """Prefix plus a compact UTC timestamp, e.g. alpha-20240104-000000."""
    return f"{prefix}{now.astimezone(timezone.utc).strftime('%Y%m%d-%H%M%S')}"


class _Run:
    """Tracks the current state of one invocation and reports transitions."""

    def __init__(self, owner: "LifecycleOrchestrator", server: str, workflow: Workflow):
        self.owner = owner
        self.server = server
        self.workflow = workflow
        self.state: Optional[Enum] = None

    def enter(self, state: Enum, message: str = "") -> None:
        self.state = state
        self.owner._emit(ProgressEvent(
            server=self.server, workflow=self.workflow.value,
            state=state.value, message=message,
        ))

    def fail(self, exc: Exception) -> None:
        failed_in = self.state.value if self.state else "unknown"
        if isinstance(exc, GameServerError):
            exc.state = failed_in
            detail = exc.describe()
            if exc.instance_retained:
                detail += " (instance not deleted, verify manually)"
        else:
            detail = f"{type(exc).__name__}: {exc}"
        self.owner._emit(ProgressEvent(
            server=self.server, workflow=self.workflow.value,
            state="failed", message=f"{failed_in}: {detail}", success=False,
        ))


# ── Orchestrator ─────────────────────────────────────────────────

class LifecycleOrchestrator:
    """
    Drives start/stop workflows for configured game servers.

    Holds no state between invocations: instances and snapshots live in the
    provider account, artifacts in the download directory, and profiles are
    re-read through `registry_loader` at the top of every request.
    Retention counts and poll timings follow each reload; the artifact
    store's directory, base URL and port are fixed when the orchestrator
    is constructed. Concurrent calls for the same server name are not
    serialized here.
    """

    def __init__(
        self,
        registry_loader: Callable[[], ServerRegistry],
        client: VultrClient = None,
        transfer: RemoteTransferClient = None,
        artifacts: ArtifactStore = None,
        poller: ReadinessPoller = None,
        progress: Callable[[ProgressEvent], None] = None,
        now: Callable[[], datetime] = None,
    ):
        self._load_registry = registry_loader
        self.client = client or VultrClient()
        self.transfer = transfer or RemoteTransferClient()
        self.poller = poller or ReadinessPoller()
        self.progress = progress
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._audit_log: List[ProgressEvent] = []

        if artifacts is None:
            settings = registry_loader().settings
            artifacts = ArtifactStore(
                download_dir=str(settings.download_dir),
                retention=settings.file_retention,
                base_url=settings.file_server_base_url,
                port=settings.file_server_port,
            )
        self.artifacts = artifacts

    @classmethod
    def from_config(cls, config_path: str = "servers.yml", **kwargs) -> "LifecycleOrchestrator":
        return cls(lambda: load_servers(config_path), **kwargs)

    def _emit(self, event: ProgressEvent) -> None:
        self._audit_log.append(event)
        level = logging.INFO if event.success else logging.WARNING
        logger.log(level, f"[AUDIT] {event.workflow} {event.server} {event.state}: {event.message}")
        if self.progress is None:
            return
        try:
            self.progress(event)
        except Exception as e:
            logger.warning(f"Progress callback failed for {event.server} {event.state}: {e}")

    # ── Start ────────────────────────────────────────────────────

    def start(self, name: str, scope: Optional[str] = None) -> StartResult:
        run = _Run(self, name, Workflow.START)
        created: Optional[Instance] = None
        try:
            run.enter(StartState.RESOLVING)
            registry = self._load_registry()
            profile = registry.resolve(name, scope)
            policy = PollPolicy(
                registry.settings.instance_poll_interval_sec,
                registry.settings.instance_ready_timeout_sec,
            )

            run.enter(StartState.CHECKING_EXISTING, f"Looking for instance {profile.label}")
            existing = self.client.find_instance_by_label(profile.label)
            if existing is not None:
                run.enter(StartState.DONE, f"Already running at {existing.main_ip}")
                return StartResult(
                    server=name, outcome=StartOutcome.ALREADY_RUNNING,
                    address=existing.main_ip, instance_id=existing.id,
                )

            run.enter(StartState.SELECTING_SNAPSHOT, f"Prefix {profile.snapshot_prefix}")
            snapshots = self.client.find_snapshots_by_prefix(profile.snapshot_prefix)
            if not snapshots:
                raise NoSnapshotAvailable(
                    f'No snapshot found for "{name}" (prefix: {profile.snapshot_prefix})'
                )
            latest = snapshots[0]

            run.enter(StartState.CREATING, f"Starting from snapshot {latest.description}")
            created = self.client.create_instance_from_snapshot(
                latest.id, profile.region, profile.plan, profile.label,
            )

            run.enter(StartState.WAITING_READY, f"Instance {created.id} created, waiting until ready")
            ready = wait_for_instance_ready(self.client, created.id, policy, self.poller)

            run.enter(StartState.DONE, f"Running at {ready.main_ip}")
            return StartResult(
                server=name, outcome=StartOutcome.STARTED, address=ready.main_ip,
                instance_id=ready.id, snapshot_description=latest.description,
            )
        except Exception as exc:
            if created is not None and isinstance(exc, GameServerError):
                exc.instance_retained = True
                logger.error(f"Start of {name} failed after creating instance {created.id}; it was left running")
            run.fail(exc)
            raise

    # ── Stop ─────────────────────────────────────────────────────

    def stop(self, name: str, scope: Optional[str] = None) -> StopResult:
        run = _Run(self, name, Workflow.STOP)
        instance: Optional[Instance] = None
        try:
            run.enter(StopState.RESOLVING)
            registry = self._load_registry()
            profile = registry.resolve(name, scope)
            settings = registry.settings

            run.enter(StopState.CHECKING_RUNNING, f"Looking for instance {profile.label}")
            instance = self.client.find_instance_by_label(profile.label)
            if instance is None:
                raise NotRunning(f'Server "{name}" is not running')

            result = StopResult(server=name, instance_id=instance.id, snapshot_id="", snapshot_description="")
            caps = StopCapabilities.of(profile)
            if caps.remote_managed:
                self._run_hooks_and_export(run, profile, instance, settings, caps, result)

            run.enter(StopState.SNAPSHOTTING)
            description = snapshot_description(profile.snapshot_prefix, self._now())
            snapshot = self.client.create_snapshot(instance.id, description)
            result.snapshot_id = snapshot.id
            result.snapshot_description = description
            wait_for_snapshot_ready(
                self.client, snapshot.id,
                PollPolicy(settings.snapshot_poll_interval_sec, settings.snapshot_ready_timeout_sec),
                self.poller,
            )

            run.enter(StopState.VERIFYING_SNAPSHOT, f"Re-checking snapshot {snapshot.id}")
            listing = self.client.find_snapshots_by_prefix(profile.snapshot_prefix)
            verified = self._verify(listing, snapshot)

            run.enter(StopState.PRUNING_SNAPSHOTS, f"Keeping newest {settings.snapshot_retention}")
            for old in prune_candidates(listing, settings.snapshot_retention, keep_id=verified.id):
                self.client.delete_snapshot(old.id)
                result.deleted_snapshots.append(old.id)
                logger.info(f"Pruned snapshot {old.description} ({old.id})")

            run.enter(StopState.DELETING_INSTANCE, f"Deleting instance {instance.id}")
            self.client.delete_instance(instance.id)

            run.enter(
                StopState.DONE,
                f"Saved as {description}; pruned {len(result.deleted_snapshots)} snapshot(s)",
            )
            return result
        except Exception as exc:
            if instance is not None:
                if isinstance(exc, GameServerError):
                    exc.instance_retained = True
                logger.error(
                    f"Stop of {name} failed; instance {instance.id} was not deleted, verify manually"
                )
            run.fail(exc)
            raise

    def _run_hooks_and_export(
        self, run: _Run, profile: ServerProfile, instance: Instance,
        settings: Settings, caps: StopCapabilities, result: StopResult,
    ) -> None:
        conn = ConnectionOptions(host=instance.main_ip, user=profile.ssh_user)

        run.enter(StopState.PRE_STOP_HOOK, "Stopping game server")
        self.transfer.execute_command(conn, profile.stop_command)

        run.enter(StopState.EXPORTING_ARTIFACTS, f"Downloading {len(profile.artifacts)} file(s)")
        for key, spec in profile.artifacts.items():
            filename = self.artifacts.generate_filename(profile.name, key, spec.path, spec.is_directory)
            local_path = self.artifacts.local_path(filename)
            try:
                if spec.is_directory:
                    self.transfer.download_directory_as_zip(conn, spec.path, local_path)
                else:
                    self.transfer.download_file(conn, spec.path, local_path)
            except GameServerError as e:
                logger.error(f"Failed to download {key} from {profile.name}: {e.describe()}")
                result.failed_artifacts.append(key)
                continue
            result.artifacts.append(self.artifacts.record(profile.name, key, filename, spec.description))
            try:
                self.artifacts.cleanup_old_artifacts(profile.name, key, settings.file_retention)
            except OSError as e:
                logger.error(f"Artifact cleanup for {profile.name}/{key} failed: {e}")

        if caps.restart:
            run.enter(StopState.POST_STOP_HOOK, "Restarting game server")
            try:
                self.transfer.execute_command(conn, profile.start_command)
            except RemoteCommandError as e:
                # the snapshot is still taken; the restart hook is best effort
                logger.warning(f"Restart hook failed on {profile.name}: {e.describe()}")
                result.restart_error = e.describe()

    @staticmethod
    def _verify(listing: List[Snapshot], created: Snapshot) -> Snapshot:
        for snapshot in listing:
            if snapshot.id == created.id:
                if snapshot.is_complete:
                    return snapshot
                raise SnapshotUnverified(
                    f"Snapshot {created.id} is {snapshot.status}, not complete; instance will not be deleted"
                )
        raise SnapshotUnverified(
            f"Snapshot {created.id} not found after waiting; instance will not be deleted"
        )

    # ── Async delegation ─────────────────────────────────────────

    async def start_async(self, name: str, scope: Optional[str] = None) -> StartResult:
        """Run start() on a worker thread so event-loop callers are not blocked."""
        return await asyncio.to_thread(self.start, name, scope)

    async def stop_async(self, name: str, scope: Optional[str] = None) -> StopResult:
        return await asyncio.to_thread(self.stop, name, scope)

    # ── Queries ──────────────────────────────────────────────────

    def list_servers(self, scope: Optional[str] = None) -> List[ServerProfile]:
        registry = self._load_registry()
        return [registry.resolve(n, scope) for n in registry.names_for_scope(scope)]

    def status(self, name: str, scope: Optional[str] = None) -> ServerStatus:
        profile = self._load_registry().resolve(name, scope)
        instance = self.client.find_instance_by_label(profile.label)
        snapshots = self.client.find_snapshots_by_prefix(profile.snapshot_prefix)
        return ServerStatus(
            name=name,
            label=profile.label,
            description=profile.description,
            running=instance is not None,
            address=instance.main_ip if instance else "",
            region=profile.region,
            plan=profile.plan,
            snapshot_count=len(snapshots),
            latest_snapshot=snapshots[0].description if snapshots else None,
        )

    def status_all(self, scope: Optional[str] = None) -> List[ServerStatus]:
        """Running state of every visible server from a single instance listing."""
        by_label = {i.label: i for i in reversed(self.client.list_instances())}
        statuses = []
        for profile in self.list_servers(scope):
            instance = by_label.get(profile.label)
            statuses.append(ServerStatus(
                name=profile.name,
                label=profile.label,
                description=profile.description,
                running=instance is not None,
                address=instance.main_ip if instance else "",
                region=profile.region,
                plan=profile.plan,
            ))
        return statuses

    def list_files(self, name: str, scope: Optional[str] = None) -> List[DownloadedArtifact]:
        profile = self._load_registry().resolve(name, scope)
        descriptions = {key: spec.description for key, spec in profile.artifacts.items()}
        return self.artifacts.list_artifacts(name, descriptions)

    # ── Audit Log ────────────────────────────────────────────────

    def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent progress events, newest first."""
        entries = self._audit_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_audit_summary(self) -> Dict[str, Any]:
        failures = [e for e in self._audit_log if not e.success]
        runs: Dict[str, int] = {}
        for e in self._audit_log:
            if e.state in ("done", "failed"):
                key = f"{e.workflow}:{e.state}"
                runs[key] = runs.get(key, 0) + 1
        return {
            "total_events": len(self._audit_log),
            "failures": len(failures),
            "runs": runs,
        }

    def __repr__(self) -> str:
        return f"LifecycleOrchestrator(events={len(self._audit_log)})"


def prune_candidates(listing: List[Snapshot], retention: int, keep_id: str) -> List[Snapshot]:
    """Snapshots beyond the newest `retention` of a newest-first listing, never `keep_id`."""
    return [s for s in listing[max(retention, 1):] if s.id != keep_id]


# ── Standalone runner ────────────────────────────────────────────

if __name__ == "__main__":
    import argparse
    import json

    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=logging.INFO,
    )

    parser = argparse.ArgumentParser(description="Start or stop a configured game server")
    parser.add_argument("action", choices=["start", "stop", "status", "files", "list"])
    parser.add_argument("name", nargs="?")
    parser.add_argument("--config", default=os.environ.get("SERVERS_CONFIG", "servers.yml"))
    args = parser.parse_args()

    orch = LifecycleOrchestrator.from_config(args.config)

    try:
        if args.action == "list":
            output = [{"name": p.name, "description": p.description, "region": p.region, "plan": p.plan}
                      for p in orch.list_servers()]
        elif args.action == "status" and not args.name:
            output = [s.to_dict() for s in orch.status_all()]
        elif not args.name:
            parser.error(f"{args.action} requires a server name")
        elif args.action == "start":
            output = orch.start(args.name).to_dict()
        elif args.action == "stop":
            output = orch.stop(args.name).to_dict()
        elif args.action == "status":
            output = orch.status(args.name).to_dict()
        else:
            output = [f.to_dict() for f in orch.list_files(args.name)]
    except GameServerError as e:
        print(e.describe())
        raise SystemExit(1)

    print(json.dumps(output, indent=2, default=str))
