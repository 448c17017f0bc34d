"""Bounded readiness polling over the provider API."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import ProviderError, ReadinessTimeout
from .vultr import Instance, Snapshot, VultrClient, is_ready

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    interval_sec: float
    timeout_sec: float


INSTANCE_READY_POLICY = PollPolicy(interval_sec=5, timeout_sec=300)
SNAPSHOT_READY_POLICY = PollPolicy(interval_sec=10, timeout_sec=600)


class ReadinessPoller:
    """
    Turns an eventually-consistent API into a blocking, deadline-bound wait.

    The refresh callable is polled at least once. Between polls the poller
    sleeps for the policy interval, clipped so it never sleeps past the
    deadline. Transient provider failures (no response, 429, 5xx) are
    logged and retried within the same deadline; any other error propagates.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sleep = sleep
        self._clock = clock

    def wait_until(
        self,
        refresh: Callable[[], T],
        predicate: Callable[[T], bool],
        policy: PollPolicy,
        what: str = "resource",
    ) -> T:
        deadline = self._clock() + policy.timeout_sec
        last: Optional[T] = None
        attempts = 0

        while True:
            attempts += 1
            try:
                last = refresh()
            except ProviderError as exc:
                if not exc.transient:
                    raise
                logger.warning(f"Transient error polling {what} (attempt {attempts}): {exc.message}")
            else:
                if predicate(last):
                    logger.info(f"{what} ready after {attempts} poll(s)")
                    return last

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.error(f"Gave up waiting for {what} after {attempts} poll(s)")
                raise ReadinessTimeout(what, policy.timeout_sec, last_seen=last)
            self._sleep(min(policy.interval_sec, remaining))


def wait_for_instance_ready(
    client: VultrClient,
    instance_id: str,
    policy: PollPolicy = INSTANCE_READY_POLICY,
    poller: Optional[ReadinessPoller] = None,
) -> Instance:
    poller = poller or ReadinessPoller()
    return poller.wait_until(
        lambda: client.get_instance(instance_id),
        is_ready,
        policy,
        what=f"instance {instance_id}",
    )


def wait_for_snapshot_ready(
    client: VultrClient,
    snapshot_id: str,
    policy: PollPolicy = SNAPSHOT_READY_POLICY,
    poller: Optional[ReadinessPoller] = None,
) -> Snapshot:
    poller = poller or ReadinessPoller()
    return poller.wait_until(
        lambda: client.get_snapshot(snapshot_id),
        lambda snapshot: snapshot.is_complete,
        policy,
        what=f"snapshot {snapshot_id}",
    )
