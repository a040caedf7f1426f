"""Deployment lock built on server-side leases.

A lock is one lease object per (namespace, name). Whoever creates the lease,
or takes over an expired one with a resource-version-checked replace, holds
the lock. While held, a background task renews the lease every third of its
duration; if a renewal fails the handle is marked lost and the guarded
operation must stop at its next :meth:`LockHandle.ensure_held` check.

Typical use::

    manager = LockManager(KubernetesLeaseStore(api_client))
    async with manager.lock("ns1", "deploy-lock") as handle:
        ...
        handle.ensure_held()
        ...
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from netforge.config.settings import get_settings
from netforge.errors import (
    AlreadyExistsError,
    ConflictError,
    LockAcquisitionError,
    LockLost,
    LockTimeout,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from netforge.lock.holder import LockHolder
from netforge.observability._logging import get_logger
from netforge.observability._metrics import (
    lock_acquisitions_total,
    lock_lost_total,
    lock_renewals_total,
    lock_wait_seconds,
)
from netforge.stores import Lease, LeaseStore


log = get_logger(__name__)

# One missed renewal is tolerated before the lease expires.
RENEWALS_PER_LEASE = 3
# Contention backoff never exceeds half a lease.
CONTENTION_BACKOFF_FRACTION = 0.5
MIN_POLL_SECONDS = 0.05


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LockState(str, Enum):
    """Lifecycle of a lock within this process."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    HELD = "held"
    RELEASING = "releasing"
    FAILED = "failed"


@dataclass(frozen=True)
class LeaseStatus:
    """Point-in-time view of a lease for status display."""

    lease: Lease
    holder: LockHolder | None
    expired: bool


class LockHandle:
    """An acquired lock.

    Owns the background renewal task. ``release`` is idempotent and is run
    automatically when the handle is used as an async context manager.
    """

    def __init__(
        self,
        store: LeaseStore,
        lease: Lease,
        holder: LockHolder,
        *,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_state_change: Callable[[LockState], None] | None = None,
    ) -> None:
        self._store = store
        self._lease = lease
        self._holder = holder
        self._clock = clock
        self._sleep = sleep
        self._on_state_change = on_state_change
        self._state = LockState.HELD
        self._lost = asyncio.Event()
        self._lost_reason: str | None = None
        self._heartbeat: asyncio.Task[None] | None = None

    @property
    def namespace(self) -> str:
        return self._lease.namespace

    @property
    def name(self) -> str:
        return self._lease.name

    @property
    def holder(self) -> LockHolder:
        return self._holder

    @property
    def lease(self) -> Lease:
        """The most recent lease snapshot written by this handle."""
        return self._lease

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    @property
    def is_held(self) -> bool:
        return self._state is LockState.HELD and not self.lost

    @property
    def renew_interval(self) -> float:
        return self._lease.lease_duration_seconds / RENEWALS_PER_LEASE

    def ensure_held(self) -> None:
        """Raise ``LockLost`` unless the lock is still held.

        Guarded operations call this at their own suspension points.
        """
        if self.lost:
            raise LockLost(self.namespace, self.name, self._lost_reason)
        if self._state is not LockState.HELD:
            raise LockLost(self.namespace, self.name, f"lock is {self._state.value}")

    async def wait_lost(self) -> None:
        """Block until the lock is lost."""
        await self._lost.wait()

    def start_heartbeat(self) -> None:
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(
                self._renew_loop(), name=f"lease-heartbeat:{self.namespace}/{self.name}"
            )

    async def release(self) -> None:
        """Stop renewing and delete the lease if it is still ours."""
        if self._state in (LockState.RELEASING, LockState.IDLE):
            return
        self._set_state(LockState.RELEASING)
        try:
            await self._stop_heartbeat()
            await self._delete_if_ours()
        finally:
            self._set_state(LockState.IDLE)
            log.info(
                "lease_released",
                namespace=self.namespace,
                lease=self.name,
                lost=self.lost,
            )

    async def __aenter__(self) -> LockHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()

    async def _renew_loop(self) -> None:
        while True:
            await self._sleep(self.renew_interval)
            try:
                self._lease = await self._store.renew(self._lease)
            except TransientStoreError as exc:
                if not self._lease.is_expired(self._clock()):
                    lock_renewals_total.labels(outcome="transient").inc()
                    log.warning(
                        "lease_renew_transient_failure",
                        namespace=self.namespace,
                        lease=self.name,
                        error=str(exc),
                    )
                    continue
                self._mark_lost(f"lease expired after failed renewals: {exc}")
                return
            except StoreError as exc:
                # Conflict: someone else wrote the lease. NotFound: it was deleted.
                self._mark_lost(f"renewal rejected: {exc}")
                return
            except Exception as exc:
                log.exception("lease_renew_failed", namespace=self.namespace, lease=self.name)
                self._mark_lost(f"renewal failed: {exc!r}")
                return
            lock_renewals_total.labels(outcome="success").inc()
            log.debug("lease_renewed", namespace=self.namespace, lease=self.name)

    def _mark_lost(self, reason: str) -> None:
        self._lost_reason = reason
        self._lost.set()
        lock_renewals_total.labels(outcome="failed").inc()
        lock_lost_total.inc()
        log.error("lease_lost", namespace=self.namespace, lease=self.name, reason=reason)

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # the lease must still be deleted below
            log.exception("lease_heartbeat_crashed", namespace=self.namespace, lease=self.name)
            if not self.lost:
                self._mark_lost("heartbeat task crashed")

    async def _delete_if_ours(self) -> None:
        identity = self._holder.to_json()
        lease = self._lease
        # One re-read covers a renewal that completed server-side after we
        # cancelled the heartbeat.
        for _ in range(2):
            try:
                await self._store.delete(
                    lease.namespace, lease.name, resource_version=lease.resource_version
                )
                return
            except NotFoundError:
                return
            except ConflictError:
                try:
                    lease = await self._store.read(lease.namespace, lease.name)
                except NotFoundError:
                    return
                except StoreError as exc:
                    log.warning("lease_release_failed", lease=lease.name, error=str(exc))
                    return
                if lease.holder_identity != identity:
                    log.info(
                        "lease_release_skipped",
                        namespace=lease.namespace,
                        lease=lease.name,
                        reason="held by another holder",
                    )
                    return
            except StoreError as exc:
                # best-effort: the lease expires on its own
                log.warning(
                    "lease_release_failed",
                    namespace=lease.namespace,
                    lease=lease.name,
                    error=str(exc),
                )
                return

    def _set_state(self, state: LockState) -> None:
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)


class LockManager:
    """Acquires deployment locks against one cluster's lease store."""

    def __init__(
        self,
        store: LeaseStore,
        *,
        holder: LockHolder | None = None,
        lease_duration_seconds: float | None = None,
        max_wait_seconds: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._holder = holder or LockHolder.current()
        self._lease_duration = lease_duration_seconds or settings.lock.lease_duration_seconds
        self._max_wait = (
            settings.lock.max_wait_seconds if max_wait_seconds is None else max_wait_seconds
        )
        self._clock = clock
        self._sleep = sleep
        self._states: dict[tuple[str, str], LockState] = {}

    @property
    def holder(self) -> LockHolder:
        return self._holder

    def state(self, namespace: str, name: str) -> LockState:
        return self._states.get((namespace, name), LockState.IDLE)

    def _record_state(self, key: tuple[str, str], state: LockState) -> None:
        self._states[key] = state

    @contextlib.asynccontextmanager
    async def lock(
        self,
        namespace: str,
        name: str,
        **kwargs: Any,
    ) -> AsyncIterator[LockHandle]:
        """Acquire, yield the handle, and release on every exit path."""
        handle = await self.acquire(namespace, name, **kwargs)
        try:
            yield handle
        finally:
            await handle.release()

    async def acquire(
        self,
        namespace: str,
        name: str,
        *,
        holder: LockHolder | None = None,
        lease_duration_seconds: float | None = None,
        max_wait_seconds: float | None = None,
    ) -> LockHandle:
        """Acquire the lock for (namespace, name).

        Raises:
            LockTimeout: If another holder kept a valid lease past ``max_wait_seconds``.
            LockAcquisitionError: If the store failed in a non-retryable way.
        """
        holder = holder or self._holder
        duration = lease_duration_seconds or self._lease_duration
        max_wait = self._max_wait if max_wait_seconds is None else max_wait_seconds
        key = (namespace, name)

        loop = asyncio.get_running_loop()
        started = loop.time()
        self._states[key] = LockState.ACQUIRING
        log.debug("lease_acquiring", namespace=namespace, lease=name, holder=str(holder))

        try:
            lease, outcome = await self._acquire_lease(
                namespace, name, holder, duration, started, max_wait
            )
        except LockTimeout:
            self._states[key] = LockState.FAILED
            lock_acquisitions_total.labels(outcome="timeout").inc()
            raise
        except StoreError as exc:
            self._states[key] = LockState.FAILED
            lock_acquisitions_total.labels(outcome="error").inc()
            raise LockAcquisitionError(
                f"failed to acquire lock '{name}' in namespace '{namespace}': {exc.message}",
                details={"namespace": namespace, "name": name, **exc.details},
            ) from exc

        waited = loop.time() - started
        lock_wait_seconds.observe(waited)
        lock_acquisitions_total.labels(outcome=outcome).inc()
        self._states[key] = LockState.HELD
        log.info(
            "lease_acquired",
            namespace=namespace,
            lease=name,
            outcome=outcome,
            waited_seconds=round(waited, 3),
            transitions=lease.transitions,
        )

        handle = LockHandle(
            self._store,
            lease,
            holder,
            clock=self._clock,
            sleep=self._sleep,
            on_state_change=functools.partial(self._record_state, key),
        )
        handle.start_heartbeat()
        return handle

    async def inspect(self, namespace: str, name: str) -> LeaseStatus | None:
        """Current lease for (namespace, name), or None if there is none."""
        try:
            lease = await self._store.read(namespace, name)
        except NotFoundError:
            return None
        return LeaseStatus(
            lease=lease,
            holder=LockHolder.from_json(lease.holder_identity),
            expired=lease.is_expired(self._clock()),
        )

    async def _acquire_lease(
        self,
        namespace: str,
        name: str,
        holder: LockHolder,
        duration: float,
        started: float,
        max_wait: float,
    ) -> tuple[Lease, str]:
        identity = holder.to_json()
        loop = asyncio.get_running_loop()
        deadline = started + max_wait

        try:
            return await self._store.create(namespace, name, identity, duration), "created"
        except AlreadyExistsError:
            pass

        while True:
            try:
                lease = await self._store.read(namespace, name)
            except NotFoundError:
                # released between our create and read
                try:
                    return await self._store.create(namespace, name, identity, duration), "created"
                except AlreadyExistsError:
                    continue

            other = LockHolder.from_json(lease.holder_identity)
            if other == holder:
                try:
                    return await self._store.renew(lease), "renewed"
                except (ConflictError, NotFoundError):
                    continue

            reason = self._takeover_reason(lease, other, holder)
            if reason is not None:
                try:
                    transferred = await self._store.transfer(lease, identity)
                except (ConflictError, NotFoundError):
                    # another contender transferred or released first
                    log.debug("lease_transfer_lost_race", namespace=namespace, lease=name)
                    continue
                log.info(
                    "lease_taken_over",
                    namespace=namespace,
                    lease=name,
                    reason=reason,
                    previous_holder=lease.holder_identity,
                )
                return transferred, "transferred"

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LockTimeout(
                    namespace,
                    name,
                    waited_seconds=loop.time() - started,
                    holder=str(other) if other else lease.holder_identity,
                )
            delay = min(self.contention_delay(lease, self._clock()), remaining)
            log.debug(
                "lease_contended",
                namespace=namespace,
                lease=name,
                holder=str(other) if other else lease.holder_identity,
                retry_in=round(delay, 3),
            )
            await self._sleep(delay)

    def _takeover_reason(
        self, lease: Lease, other: LockHolder | None, holder: LockHolder
    ) -> str | None:
        if lease.is_expired(self._clock()):
            return "expired"
        if (
            other is not None
            and other.is_same_machine(holder)
            and other.pid != holder.pid
            and not other.is_process_alive()
        ):
            return "holder_process_exited"
        return None

    def contention_delay(self, lease: Lease, now: datetime) -> float:
        """How long to wait before re-reading a lease held by someone else.

        Wakes shortly after the holder's next expected renewal, so a release
        is noticed within one renewal cycle, and never waits more than half
        a lease.
        """
        duration = lease.lease_duration_seconds or self._lease_duration
        ceiling = duration * CONTENTION_BACKOFF_FRACTION
        floor = max(MIN_POLL_SECONDS, duration / 10)
        last = lease.last_renewal
        if last is None:
            return ceiling
        slack = min(0.25, duration / 20)
        next_renewal = last + timedelta(seconds=duration / RENEWALS_PER_LEASE)
        until_next = (next_renewal - now).total_seconds() + slack
        return min(ceiling, max(floor, until_next))


__all__ = ["LeaseStatus", "LockHandle", "LockManager", "LockState"]
