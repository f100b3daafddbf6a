"""Deployment change detection.

A worker "needs redeployment" when the state hash of its live graph differs
from the hash of the snapshot it was deployed with. The detector runs that
comparison after edits, debounced and throttled, and keeps re-checking
periodically while the flag is set so that reverting an edit clears it.

States::

    IDLE --notify_change--> PENDING_CHECK --timer--> CHECKING --result--> IDLE
"""

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

import httpx

from app.db import execution_log_store
from app.db.graph_store import GraphStore, graph_store
from app.models import DeploymentInfo, Worker, WorkerGraph
from app.services.execution_logger import compute_state_hash

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 1.0  # seconds
DEFAULT_THROTTLE = 3.0
DEFAULT_PERIODIC_INTERVAL = 5.0
DEFAULT_REGISTRY_TTL = 300.0


# =============================================================================
# Status computation
# =============================================================================


async def needs_redeployment(worker: Worker, store: GraphStore = graph_store) -> bool:
    """Compare the live graph's hash with the deployed snapshot's hash."""
    if not worker.is_deployed or not worker.deployed_snapshot_id:
        return False

    snapshot = await execution_log_store.get_snapshot(worker.deployed_snapshot_id)
    if snapshot is None:
        return True

    live = await store.load_graph(worker.id) or WorkerGraph()
    return compute_state_hash(live) != snapshot.state_hash


async def get_deployment_info(worker: Worker, store: GraphStore = graph_store) -> DeploymentInfo:
    return DeploymentInfo(
        is_deployed=worker.is_deployed,
        deployed_at=worker.deployed_at,
        needs_redeployment=await needs_redeployment(worker, store),
    )


# =============================================================================
# Registry
# =============================================================================


class DeploymentStatusRegistry:
    """Worker-id keyed cache of deployment status with per-entry expiry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_REGISTRY_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[DeploymentInfo, float]] = {}

    def get(self, worker_id: str) -> DeploymentInfo | None:
        entry = self._entries.get(worker_id)
        if entry is None:
            return None
        status, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[worker_id]
            return None
        return status

    def set(self, worker_id: str, status: DeploymentInfo) -> None:
        self._entries[worker_id] = (status, self._clock() + self.ttl_seconds)

    def set_needs_redeployment(self, worker_id: str, value: bool) -> None:
        current = self.get(worker_id) or DeploymentInfo(is_deployed=True)
        self.set(worker_id, current.model_copy(update={"needs_redeployment": value}))

    def invalidate(self, worker_id: str) -> None:
        self._entries.pop(worker_id, None)

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# Checkers
# =============================================================================


class DeploymentChecker(Protocol):
    async def needs_redeployment(self, worker_id: str) -> bool: ...


class LocalDeploymentChecker:
    """Checks through the store in the same process."""

    def __init__(self, store: GraphStore = graph_store):
        self.store = store

    async def needs_redeployment(self, worker_id: str) -> bool:
        worker = await self.store.get_worker(worker_id)
        if worker is None:
            return False
        return await needs_redeployment(worker, self.store)


class HttpDeploymentChecker:
    """Checks through ``GET /api/workers/{id}/status`` of a running service."""

    def __init__(
        self,
        base_url: str,
        user_id: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.timeout = timeout
        self._transport = transport

    async def needs_redeployment(self, worker_id: str) -> bool:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            response = await client.get(
                f"/api/workers/{worker_id}/status", headers={"X-User-Id": self.user_id}
            )
            response.raise_for_status()
            body = response.json()
        return bool(body.get("data", {}).get("needsRedeployment", False))


# =============================================================================
# Detector
# =============================================================================


class DetectorState(str, Enum):
    IDLE = "idle"
    PENDING_CHECK = "pending_check"
    CHECKING = "checking"


class DeploymentChangeDetector:
    """Debounced, throttled and periodic redeployment checks for one active worker.

    Args:
        checker: Performs the actual comparison
        registry: Shared status registry updated with every result
        debounce: Quiet period after the last edit before checking
        throttle: Minimum spacing between two checks
        periodic_interval: Re-check interval while redeployment is needed
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        checker: DeploymentChecker,
        registry: DeploymentStatusRegistry,
        debounce: float = DEFAULT_DEBOUNCE,
        throttle: float = DEFAULT_THROTTLE,
        periodic_interval: float = DEFAULT_PERIODIC_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.checker = checker
        self.registry = registry
        self.debounce = debounce
        self.throttle = throttle
        self.periodic_interval = periodic_interval
        self._clock = clock

        self.state = DetectorState.IDLE
        self.worker_id: str | None = None
        self.is_deployed = False
        self.needs_redeployment = False
        self.pending_changes = 0
        self.check_count = 0

        self._last_check_at: float | None = None
        # Bumped on every activation; results of older activations are dropped
        self._generation = 0
        self._pending: asyncio.Task | None = None
        self._periodic: asyncio.Task | None = None

    # ==================== Public API ====================

    def activate(self, worker_id: str | None, is_deployed: bool) -> None:
        """Switch to a worker, dropping timers and results of the previous one."""
        self._cancel_timers()
        self._generation += 1
        self.worker_id = worker_id
        self.is_deployed = is_deployed
        self.pending_changes = 0
        self._last_check_at = None
        self.state = DetectorState.IDLE

        cached = self.registry.get(worker_id) if worker_id else None
        self.needs_redeployment = bool(cached and cached.needs_redeployment and is_deployed)
        if self.needs_redeployment:
            self._ensure_periodic()

    def notify_change(self) -> None:
        """Schedule a check after a live-graph edit."""
        if not self.worker_id or not self.is_deployed:
            return

        self.pending_changes += 1
        delay = self.debounce
        if self._last_check_at is not None:
            elapsed = self._clock() - self._last_check_at
            if elapsed < self.throttle:
                delay = max(self.throttle - elapsed, self.debounce)

        if self._pending is not None:
            self._pending.cancel()
        self.state = DetectorState.PENDING_CHECK
        self._pending = asyncio.create_task(self._delayed_check(delay))

    def mark_deployed(self) -> None:
        """The active worker was just deployed: nothing is pending."""
        self._cancel_timers()
        self._generation += 1
        self.is_deployed = True
        self.needs_redeployment = False
        self.pending_changes = 0
        self.state = DetectorState.IDLE
        if self.worker_id:
            self.registry.set_needs_redeployment(self.worker_id, False)

    async def close(self) -> None:
        """Cancel all timers and wait for them to finish."""
        tasks = [t for t in (self._pending, self._periodic) if t is not None]
        self._cancel_timers()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ==================== Internals ====================

    def _cancel_timers(self) -> None:
        for task in (self._pending, self._periodic):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._pending = None
        self._periodic = None

    def _ensure_periodic(self) -> None:
        if self._periodic is None or self._periodic.done():
            self._periodic = asyncio.create_task(self._periodic_loop())

    async def _delayed_check(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._pending = None
        await self._run_check()

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_interval)
            if not self.needs_redeployment:
                return
            if self.state == DetectorState.IDLE:
                await self._run_check()

    async def _run_check(self) -> None:
        worker_id = self.worker_id
        if worker_id is None:
            return

        generation = self._generation
        self.state = DetectorState.CHECKING
        self._last_check_at = self._clock()
        self.check_count += 1
        try:
            result = await self.checker.needs_redeployment(worker_id)
        except Exception as e:
            # Runs as a background task: log and fall back so later checks still run
            logger.warning(f"Deployment check failed for worker {worker_id}: {e!r}")
            result = None

        if generation != self._generation:
            logger.debug(f"Discarding stale deployment check for worker {worker_id}")
            return

        if result is None:
            self.state = (
                DetectorState.PENDING_CHECK if self._pending is not None else DetectorState.IDLE
            )
            return

        self.needs_redeployment = result
        self.registry.set_needs_redeployment(worker_id, result)
        if self._pending is None:
            self.pending_changes = 0
            self.state = DetectorState.IDLE
        else:
            self.state = DetectorState.PENDING_CHECK
        if result:
            self._ensure_periodic()
