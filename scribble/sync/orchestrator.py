"""Client-side sync orchestration.

Decides when to sync, guards attempts with a time-bounded lease, pulls
the remote blob, pushes local changes and applies what the server
returns. The merge itself runs server-side.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable

from ..config import SyncConfig
from ..errors import LockBusy, NotConfigured, TransportError, Unauthorized
from ..state.local import LocalState
from ..state.models import now_ms
from ..state.normalize import to_ms
from ..store import KeyValueStore
from .blob_client import BlobClient, SyncEndpoint

logger = logging.getLogger(__name__)

LAST_ATTEMPT_KEY = "sync_last_attempt"
LAST_SUCCESS_KEY = "sync_last_success"
LOCK_KEY = "sync_lock_until"
SYNC_CONFIG_KEY = "sync_config"


class SyncStatus(Enum):
    """Outcome of a sync attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"  # Not due yet
    NOT_CONFIGURED = "not_configured"
    LOCKED = "locked"  # Another attempt holds the lease
    UNAUTHORIZED = "unauthorized"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of one sync attempt."""

    status: SyncStatus
    message: str
    pulled: bool = False
    pushed: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.status in (
            SyncStatus.SUCCESS,
            SyncStatus.SKIPPED,
            SyncStatus.NOT_CONFIGURED,
            SyncStatus.LOCKED,
        )


class SyncOrchestrator:
    """Runs gated, lease-protected sync attempts for one LocalState.

    Gating is on the last *attempt*, not the last success, so a failing
    remote is contacted at most once per interval unless forced.
    """

    def __init__(
        self,
        local: LocalState,
        store: KeyValueStore,
        config: SyncConfig | None = None,
        client_factory: Callable[[SyncEndpoint], BlobClient] | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the orchestrator.

        Args:
            local: The owned local state to sync.
            store: Store holding sync bookkeeping (attempts, lease, endpoint).
            config: Sync settings; defaults apply when omitted.
            client_factory: Builds a BlobClient for an endpoint.
            clock: Millisecond clock.
        """
        self.local = local
        self.config = config or SyncConfig()
        self._store = store
        self._clock = clock
        self._client_factory = client_factory or self._default_client

    def _default_client(self, endpoint: SyncEndpoint) -> BlobClient:
        return BlobClient(endpoint, timeout=self.config.timeout_seconds, clock=self._clock)

    @property
    def interval_ms(self) -> int:
        return int(self.config.interval_hours * 60 * 60 * 1000)

    @property
    def lock_ttl_ms(self) -> int:
        return int(self.config.lock_ttl_seconds * 1000)

    # ==================== Endpoint ====================

    def endpoint(self) -> SyncEndpoint:
        """The configured endpoint: stored record first, then config file."""
        stored = self._store.get(SYNC_CONFIG_KEY)
        if isinstance(stored, dict):
            return SyncEndpoint.from_dict(stored)
        return SyncEndpoint(
            base_url=self.config.base_url,
            sync_id=self.config.sync_id,
            token=self.config.token,
        )

    def configure_endpoint(self, base_url: str, sync_id: str, token: str) -> SyncEndpoint:
        """Validate and persist the sync endpoint."""
        endpoint = SyncEndpoint(base_url=base_url.strip(), sync_id=sync_id.strip(), token=token)
        endpoint.validate()
        self._store.set(SYNC_CONFIG_KEY, endpoint.to_dict())
        logger.info(f"Sync endpoint set to {endpoint.base_url} ({endpoint.sync_id})")
        return endpoint

    # ==================== Gating & lease ====================

    @property
    def last_attempt(self) -> int:
        return to_ms(self._store.get(LAST_ATTEMPT_KEY))

    @property
    def last_success(self) -> int:
        return to_ms(self._store.get(LAST_SUCCESS_KEY))

    def should_attempt(self, force: bool = False) -> bool:
        """Whether a sync attempt is due."""
        if force:
            return True
        return self._clock() - self.last_attempt >= self.interval_ms

    def _acquire_lease(self) -> int:
        now = self._clock()
        current = self._store.get(LOCK_KEY)
        expires = to_ms(current)
        if expires > now:
            raise LockBusy(f"Sync already running (lease expires in {(expires - now) // 1000}s)")

        lease_until = now + self.lock_ttl_ms
        if not self._store.compare_and_set(LOCK_KEY, current, lease_until):
            raise LockBusy("Sync already running (lease taken concurrently)")
        return lease_until

    def _release_lease(self, lease_until: int) -> None:
        if not self._store.compare_and_set(LOCK_KEY, lease_until, 0):
            logger.debug("Lease was already taken over; not releasing")

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[int]:
        """Hold the sync lease for the duration of the block.

        Raises:
            LockBusy: If a live lease is held elsewhere.
        """
        lease_until = self._acquire_lease()
        try:
            yield lease_until
        finally:
            self._release_lease(lease_until)

    # ==================== Sync ====================

    async def sync(self, force: bool = False, adopt: bool = False) -> SyncResult:
        """Run one sync attempt.

        Args:
            force: Ignore the attempt interval.
            adopt: Replace local state with the remote copy even if it is
                not newer.

        Returns:
            SyncResult describing the outcome.
        """
        if not self.config.enabled:
            return SyncResult(SyncStatus.NOT_CONFIGURED, "Sync is disabled")

        endpoint = self.endpoint()
        try:
            endpoint.validate()
        except NotConfigured as e:
            logger.debug(f"Sync skipped: {e}")
            return SyncResult(SyncStatus.NOT_CONFIGURED, str(e))

        if not self.should_attempt(force):
            due = datetime.fromtimestamp((self.last_attempt + self.interval_ms) / 1000)
            return SyncResult(SyncStatus.SKIPPED, f"Sync not due until {due.isoformat()}")

        try:
            async with self.lease():
                self._store.set(LAST_ATTEMPT_KEY, self._clock())
                result = await self._run(endpoint, adopt)
        except LockBusy as e:
            logger.info(str(e))
            return SyncResult(SyncStatus.LOCKED, str(e))

        if result.status == SyncStatus.SUCCESS:
            logger.info(f"Sync: {result.message}")
        else:
            logger.warning(f"Sync {result.status.value}: {result.message}")
        return result

    async def _run(self, endpoint: SyncEndpoint, adopt: bool) -> SyncResult:
        pulled = pushed = False
        client = self._client_factory(endpoint)

        try:
            remote = await client.fetch_remote()
            if remote is not None and self._should_adopt(remote.updated_at, adopt):
                self.local.apply(remote)
                pulled = True

            if self.local.is_dirty:
                merged = await client.push_and_merge(self.local.state)
                self.local.apply(merged)
                self.local.clear_dirty()
                pushed = True

        except Unauthorized as e:
            return SyncResult(SyncStatus.UNAUTHORIZED, str(e), pulled=pulled)
        except TransportError as e:
            return SyncResult(SyncStatus.FAILED, str(e), pulled=pulled)
        finally:
            await client.close()

        self._store.set(LAST_SUCCESS_KEY, self._clock())
        return SyncResult(
            SyncStatus.SUCCESS,
            self._describe(pulled, pushed),
            pulled=pulled,
            pushed=pushed,
        )

    def _should_adopt(self, remote_updated_at: int, adopt: bool) -> bool:
        if adopt:
            return True
        # Unpushed local edits are reconciled by the server-side merge on push
        if self.local.is_dirty:
            return False
        return remote_updated_at > self.local.updated_at

    @staticmethod
    def _describe(pulled: bool, pushed: bool) -> str:
        if pulled and pushed:
            return "pulled remote changes and pushed local changes"
        if pulled:
            return "pulled remote changes"
        if pushed:
            return "pushed local changes"
        return "already up to date"

    async def sync_loop(
        self,
        check_interval_seconds: float | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run gated sync attempts until stopped.

        Args:
            check_interval_seconds: Seconds between gate checks.
            stop_event: Event to signal loop should stop.
        """
        if check_interval_seconds is None:
            check_interval_seconds = self.config.check_interval_minutes * 60

        logger.info(f"Starting sync loop, checking every {check_interval_seconds}s")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.sync()
                logger.debug(f"Sync check: {result.status.value} - {result.message}")
            except Exception as e:
                logger.error(f"Sync loop error: {e}")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=check_interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(check_interval_seconds)

        logger.info("Sync loop stopped")

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync bookkeeping."""
        endpoint = self.endpoint()

        def _iso(ms: int) -> str | None:
            return datetime.fromtimestamp(ms / 1000).isoformat() if ms else None

        lock_until = to_ms(self._store.get(LOCK_KEY))
        state = self.local.state

        return {
            "enabled": self.config.enabled,
            "configured": endpoint.is_configured,
            "base_url": endpoint.base_url or None,
            "sync_id": endpoint.sync_id or None,
            "last_attempt": _iso(self.last_attempt),
            "last_success": _iso(self.last_success),
            "dirty": self.local.is_dirty,
            "lock_until": _iso(lock_until) if lock_until > self._clock() else None,
            "updated_at": state.updated_at,
            "task_count": len(state.tasks),
            "tombstone_count": len(state.tombstones),
        }
