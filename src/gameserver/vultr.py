#!/usr/bin/env python3
"""
Vultr API Client: Compute Lifecycle for Game Servers
Wraps the Vultr v2 public API (api.vultr.com/v2) for instances and snapshots.

Implements:
- list_instances() -> list[Instance]
- get_instance(instance_id) -> Instance
- find_instance_by_label(label) -> Instance | None
- create_instance_from_snapshot(snapshot_id, region, plan, label) -> Instance
- delete_instance(instance_id)
- list_snapshots() -> list[Snapshot]
- get_snapshot(snapshot_id) -> Snapshot
- find_snapshots_by_prefix(prefix) -> list[Snapshot]
- create_snapshot(instance_id, description) -> Snapshot
- delete_snapshot(snapshot_id)

Every call is one authenticated round trip. Failures raise ProviderError;
retrying is left to the poller or the caller.
"""

import logging
import os
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import requests

from .errors import ProviderError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.vultr.com/v2"


@dataclass
class Instance:
    """Compute instance as reported by the Vultr API."""
    id: str
    label: str
    main_ip: str = ""
    status: str = "unknown"
    power_status: str = "unknown"
    server_status: str = "unknown"
    region: str = ""
    plan: str = ""
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def ready(self) -> bool:
        return is_ready(self)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass
class Snapshot:
    """Disk snapshot as reported by the Vultr API."""
    id: str
    description: str
    date_created: str = ""
    size: int = 0
    status: str = "unknown"
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def created_at(self) -> datetime:
        """Creation time; unparseable or missing dates sort as the oldest."""
        try:
            created = datetime.fromisoformat(self.date_created.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


def is_ready(instance: Instance) -> bool:
    """An instance is usable once lifecycle, power and health all agree."""
    return (
        instance.status == "active"
        and instance.power_status == "running"
        and instance.server_status == "ok"
    )


def newest_first(snapshots: List[Snapshot]) -> List[Snapshot]:
    """Order snapshots by creation time, newest first; ties fall back to id."""
    return sorted(snapshots, key=lambda s: (s.created_at, s.id), reverse=True)


class VultrClient:
    """
    Vultr compute API client.

    Used by the lifecycle orchestrator for:
    - Instance creation from snapshots and deletion
    - Snapshot creation, lookup and pruning
    - Readiness polling (via the poller)

    Auth: Bearer token from VULTR_API_KEY env var or constructor arg.
    """

    DEFAULT_TIMEOUT = 30
    PAGE_SIZE = 500

    def __init__(self, api_key: str = None, timeout: int = None, base_url: str = None):
        self.api_key = api_key or os.environ.get("VULTR_API_KEY")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.base_url = (base_url or BASE_URL).rstrip("/")

        if not self.api_key:
            logger.warning("No Vultr API key configured. Set VULTR_API_KEY env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"VultrClient initialized "
            f"(key={'configured' if self.api_key else 'missing'})"
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Make an authenticated request. Returns the decoded body ({} for 204)."""
        url = f"{self.base_url}{path}"
        self._request_count += 1

        try:
            resp = requests.request(
                method, url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout:
            self._error_count += 1
            logger.error(f"Vultr API timeout: {method} {path}")
            raise ProviderError(None, f"timeout after {self.timeout}s", method, path)
        except requests.ConnectionError as e:
            self._error_count += 1
            logger.error(f"Vultr API connection error: {method} {path}")
            raise ProviderError(None, f"connection error: {e}", method, path)

        if resp.status_code == 204:
            return {}

        if not 200 <= resp.status_code < 300:
            self._error_count += 1
            logger.warning(
                f"Vultr API error: {method} {path} -> "
                f"{resp.status_code} {resp.text[:300]}"
            )
            raise ProviderError(resp.status_code, resp.text, method, path)

        try:
            return resp.json()
        except ValueError:
            self._error_count += 1
            raise ProviderError(resp.status_code, f"invalid JSON body: {resp.text[:200]}", method, path)

    def _list(self, path: str, key: str) -> List[Dict[str, Any]]:
        """Fetch every page of a list endpoint, following meta.links.next."""
        items: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"per_page": self.PAGE_SIZE}
        while True:
            data = self._request("GET", path, params=params)
            items.extend(data.get(key, []))
            cursor = (data.get("meta") or {}).get("links", {}).get("next")
            if not cursor:
                return items
            params = {"per_page": self.PAGE_SIZE, "cursor": cursor}

    # ── Instances ────────────────────────────────────────────────

    def list_instances(self) -> List[Instance]:
        """List all instances on the account."""
        instances = [self._parse_instance(i) for i in self._list("/instances", "instances")]
        logger.debug(f"Listed {len(instances)} instances")
        return instances

    def get_instance(self, instance_id: str) -> Instance:
        data = self._request("GET", f"/instances/{instance_id}")
        return self._parse_instance(data.get("instance", {}))

    def find_instance_by_label(self, label: str) -> Optional[Instance]:
        """First instance whose label matches exactly, or None."""
        for instance in self.list_instances():
            if instance.label == label:
                return instance
        return None

    def create_instance_from_snapshot(
        self, snapshot_id: str, region: str, plan: str, label: str,
    ) -> Instance:
        """Create an instance from a snapshot. Returns the pending instance."""
        data = self._request(
            "POST", "/instances",
            json={
                "region": region,
                "plan": plan,
                "snapshot_id": snapshot_id,
                "label": label,
            },
        )
        instance = self._parse_instance(data.get("instance", {}))
        logger.info(f"Created instance {instance.id} ({label}) from snapshot {snapshot_id}")
        return instance

    def delete_instance(self, instance_id: str) -> None:
        self._request("DELETE", f"/instances/{instance_id}")
        logger.info(f"Deleted instance {instance_id}")

    # ── Snapshots ────────────────────────────────────────────────

    def list_snapshots(self) -> List[Snapshot]:
        return [self._parse_snapshot(s) for s in self._list("/snapshots", "snapshots")]

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        data = self._request("GET", f"/snapshots/{snapshot_id}")
        return self._parse_snapshot(data.get("snapshot", {}))

    def find_snapshots_by_prefix(self, prefix: str) -> List[Snapshot]:
        """Snapshots whose description starts with prefix, newest first."""
        matching = [s for s in self.list_snapshots() if s.description.startswith(prefix)]
        return newest_first(matching)

    def create_snapshot(self, instance_id: str, description: str) -> Snapshot:
        data = self._request(
            "POST", "/snapshots",
            json={"instance_id": instance_id, "description": description},
        )
        snapshot = self._parse_snapshot(data.get("snapshot", {}))
        logger.info(f"Snapshot {snapshot.id} requested for instance {instance_id}: {description}")
        return snapshot

    def delete_snapshot(self, snapshot_id: str) -> None:
        self._request("DELETE", f"/snapshots/{snapshot_id}")
        logger.info(f"Deleted snapshot {snapshot_id}")

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _parse_instance(data: Dict[str, Any]) -> Instance:
        return Instance(
            id=data.get("id", ""),
            label=data.get("label", ""),
            main_ip=data.get("main_ip", ""),
            status=data.get("status", "unknown"),
            power_status=data.get("power_status", "unknown"),
            server_status=data.get("server_status", "unknown"),
            region=data.get("region", ""),
            plan=data.get("plan", ""),
            raw=data,
        )

    @staticmethod
    def _parse_snapshot(data: Dict[str, Any]) -> Snapshot:
        return Snapshot(
            id=data.get("id", ""),
            description=data.get("description", ""),
            date_created=data.get("date_created", ""),
            size=data.get("size", 0) or 0,
            status=data.get("status", "unknown"),
            raw=data,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get client-side stats."""
        return {
            "key_configured": bool(self.api_key),
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "error_rate_percent": (
                round(self._error_count / self._request_count * 100, 1)
                if self._request_count > 0 else 0
            ),
        }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    client = VultrClient()

    instances = client.list_instances()
    print(f"\nInstances ({len(instances)}):")
    for inst in instances:
        print(f"  - [{inst.id}] {inst.label}: {inst.status}/{inst.power_status}/{inst.server_status} ({inst.main_ip})")

    snapshots = newest_first(client.list_snapshots())
    print(f"\nSnapshots ({len(snapshots)}):")
    for snap in snapshots:
        print(f"  - [{snap.id}] {snap.description}: {snap.status} ({snap.date_created})")

    import json
    print(f"\nClient stats: {json.dumps(client.get_stats(), indent=2)}")
