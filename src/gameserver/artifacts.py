#!/usr/bin/env python3
"""
Artifact Store: locally retained exports from game servers

Files pulled off an instance before it is destroyed land in one download
directory, named so that the name alone carries all metadata:

    {server}_{artifact_key}_{timestamp_millis}_{8 hex chars}{ext}

There is no index file; listings and retention are reconstructed from the
directory contents. The directory is served read-only under /files/ by the
front end, so every artifact also has a public URL.
"""

import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_DIR = "downloads"
DEFAULT_RETENTION = 5
DEFAULT_PORT = 8080

_SUFFIX = re.compile(r"^(?P<key>.+)_(?P<millis>\d+)_(?P<token>[0-9a-f]{8})(?P<ext>(\.[^./]*)*)$")


@dataclass
class DownloadedArtifact:
    """One exported file (or zipped directory) in the download directory."""
    server_name: str
    artifact_key: str
    filename: str
    url: str
    description: str
    downloaded_at: datetime
    local_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["downloaded_at"] = self.downloaded_at.isoformat()
        return d


class ArtifactStore:
    """
    Filename generation, URL mapping and count-based retention for
    downloaded artifacts.

    Design principles:
    - Deterministic names: server, key and time are recoverable from the name
    - Cleanup never raises: a file that cannot be deleted is logged and kept
    - Clock and random token are injectable for tests
    """

    def __init__(
        self,
        download_dir: str = None,
        retention: int = None,
        base_url: str = None,
        port: int = None,
        clock: Callable[[], float] = time.time,
        token: Callable[[], str] = None,
    ):
        self.download_dir = Path(download_dir or os.environ.get("FILE_DOWNLOAD_DIR") or DEFAULT_DOWNLOAD_DIR)
        self.retention = retention if retention is not None else DEFAULT_RETENTION
        self.base_url = (base_url or "").rstrip("/")
        self.port = port or DEFAULT_PORT
        self._clock = clock
        self._token = token or (lambda: uuid.uuid4().hex[:8])

        self.download_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"ArtifactStore at {self.download_dir} (retention={self.retention})")

    # ── Naming ───────────────────────────────────────────────────

    def generate_filename(
        self, server_name: str, artifact_key: str, remote_path: str, is_directory: bool = False,
    ) -> str:
        if is_directory:
            ext = ".zip"
        else:
            ext = os.path.splitext(remote_path.rstrip("/"))[1]
        millis = int(self._clock() * 1000)
        return f"{server_name}_{artifact_key}_{millis}_{self._token()}{ext}"

    def local_path(self, filename: str) -> str:
        return str(self.download_dir / filename)

    def url_for(self, filename: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{filename}"
        return f"http://localhost:{self.port}/files/{filename}"

    def record(self, server_name: str, artifact_key: str, filename: str, description: str) -> DownloadedArtifact:
        """Describe a file that has just been written to the store."""
        return DownloadedArtifact(
            server_name=server_name,
            artifact_key=artifact_key,
            filename=filename,
            url=self.url_for(filename),
            description=description,
            downloaded_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            local_path=self.local_path(filename),
        )

    # ── Listing & Retention ──────────────────────────────────────

    def _parse(self, server_name: str, filename: str) -> Optional[Dict[str, Any]]:
        prefix = f"{server_name}_"
        if not filename.startswith(prefix):
            return None
        match = _SUFFIX.match(filename[len(prefix):])
        if match is None:
            return None
        return {
            "key": match.group("key"),
            "downloaded_at": datetime.fromtimestamp(int(match.group("millis")) / 1000, tz=timezone.utc),
        }

    def _entries(self, server_name: str, artifact_key: str = None) -> List[Dict[str, Any]]:
        entries = []
        try:
            names = os.listdir(self.download_dir)
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error(f"Cannot list artifact directory {self.download_dir}: {e}")
            return []
        for name in names:
            parsed = self._parse(server_name, name)
            if parsed is None:
                continue
            if artifact_key is not None and parsed["key"] != artifact_key:
                continue
            path = self.download_dir / name
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            entries.append({"name": name, "path": path, "mtime": mtime, **parsed})
        entries.sort(key=lambda e: (e["mtime"], e["name"]), reverse=True)
        return entries

    def list_artifacts(
        self, server_name: str, descriptions: Dict[str, str] = None,
    ) -> List[DownloadedArtifact]:
        """All stored artifacts for a server, newest first."""
        descriptions = descriptions or {}
        return [
            DownloadedArtifact(
                server_name=server_name,
                artifact_key=e["key"],
                filename=e["name"],
                url=self.url_for(e["name"]),
                description=descriptions.get(e["key"], e["key"]),
                downloaded_at=e["downloaded_at"],
                local_path=str(e["path"]),
            )
            for e in self._entries(server_name)
        ]

    def cleanup_old_artifacts(
        self, server_name: str, artifact_key: str, retention: int = None,
    ) -> List[str]:
        """Delete all but the newest `retention` files for (server, key). Returns deleted names."""
        keep = self.retention if retention is None else retention
        deleted = []
        for entry in self._entries(server_name, artifact_key)[max(keep, 0):]:
            try:
                entry["path"].unlink()
                deleted.append(entry["name"])
                logger.info(f"Deleted old artifact: {entry['name']}")
            except OSError as e:
                logger.error(f"Failed to delete artifact {entry['name']}: {e}")
        return deleted
