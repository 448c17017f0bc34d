"""
Game Server Lifecycle: ephemeral Vultr game servers from snapshots

Provides:
- Vultr API (VultrClient): instances and snapshots
- Readiness Poller (ReadinessPoller): bounded waits on async provider state
- SSH Transfer Bridge (RemoteTransferClient): hooks and save-file export
- Artifact Store (ArtifactStore): retained downloads with public URLs
- Lifecycle Orchestrator (LifecycleOrchestrator): start/stop workflows
- Running-server reminder (RunningServerReminder)
"""

from .errors import (
    GameServerError, NotConfigured, NotRunning, NoSnapshotAvailable,
    ProviderError, ReadinessTimeout, SnapshotUnverified,
    RemoteCommandError, RemoteReadError, LocalWriteError,
)
from .vultr import VultrClient, Instance, Snapshot, is_ready
from .poller import ReadinessPoller, PollPolicy, wait_for_instance_ready, wait_for_snapshot_ready
from .ssh_bridge import RemoteTransferClient, ConnectionOptions, ExecResult
from .artifacts import ArtifactStore, DownloadedArtifact
from .config import ServerProfile, ArtifactSpec, Settings, ServerRegistry, load_servers
from .lifecycle import (
    LifecycleOrchestrator, StartResult, StopResult, ServerStatus,
    ProgressEvent, StartOutcome, StartState, StopState,
)
from .reminder import RunningServerReminder

__all__ = [
    'GameServerError', 'NotConfigured', 'NotRunning', 'NoSnapshotAvailable',
    'ProviderError', 'ReadinessTimeout', 'SnapshotUnverified',
    'RemoteCommandError', 'RemoteReadError', 'LocalWriteError',
    'VultrClient', 'Instance', 'Snapshot', 'is_ready',
    'ReadinessPoller', 'PollPolicy', 'wait_for_instance_ready', 'wait_for_snapshot_ready',
    'RemoteTransferClient', 'ConnectionOptions', 'ExecResult',
    'ArtifactStore', 'DownloadedArtifact',
    'ServerProfile', 'ArtifactSpec', 'Settings', 'ServerRegistry', 'load_servers',
    'LifecycleOrchestrator', 'StartResult', 'StopResult', 'ServerStatus',
    'ProgressEvent', 'StartOutcome', 'StartState', 'StopState',
    'RunningServerReminder',
]
