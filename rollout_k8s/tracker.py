"""Rollout tracking for Deployments."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional

from .config import Settings
from .gateway import ResourceGateway
from .models import (
    DEPLOYMENT_GVK,
    RolloutEvent,
    RolloutPhase,
    TerminationReason,
    WorkloadStatus,
)

logger = logging.getLogger(__name__)


@dataclass
class RolloutSession:
    """State of one tracked rollout, owned by its task."""

    namespace: str
    name: str
    watched_generation: int
    deadline: float  # event loop time
    phase: RolloutPhase = RolloutPhase.PENDING
    last_status: Optional[WorkloadStatus] = None
    polls: int = 0

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


def _replicas_ready(status: WorkloadStatus, strict: bool) -> bool:
    if status.ready_replicas != status.desired_replicas:
        return False
    # Old pods still terminating are counted in status.replicas
    return not strict or status.current_replicas == status.desired_replicas


@dataclass(frozen=True)
class PhaseTransition:
    """Advance from ``source`` to ``target`` when ``condition`` holds."""

    source: RolloutPhase
    target: RolloutPhase
    condition: Callable[[WorkloadStatus, bool], bool]
    min_verbosity: Optional[int] = None  # None: reported by the terminal event


TRANSITIONS: dict[RolloutPhase, PhaseTransition] = {
    t.source: t
    for t in (
        PhaseTransition(
            RolloutPhase.PENDING,
            RolloutPhase.DEPLOYING,
            lambda s, strict: s.updated_replicas > 0,
            min_verbosity=1,
        ),
        PhaseTransition(
            RolloutPhase.DEPLOYING,
            RolloutPhase.REPLICAS_UPDATED,
            lambda s, strict: s.updated_replicas >= s.desired_replicas,
            min_verbosity=2,
        ),
        PhaseTransition(
            RolloutPhase.REPLICAS_UPDATED,
            RolloutPhase.REPLICAS_READY,
            _replicas_ready,
        ),
    )
}


class RolloutTracker:
    """
    Tracks Deployment rollouts and reports progress through an event queue.

    Each tracked rollout runs as its own asyncio task which polls the
    Deployment until it is fully rolled out, interrupted, fails or runs out
    of time. Every session posts exactly one final event with ``done=True``.
    """

    def __init__(
        self,
        timeout: float = 600.0,
        check_interval: float = 2.0,
        strict: bool = True,
        verbosity: int = 1,
        include_status: bool = True,
        queue_size: int = 16,
    ):
        """
        Initialize rollout tracker.

        Args:
            timeout: Time budget of each session in seconds
            check_interval: Seconds between status polls
            strict: Also require status.replicas == spec.replicas to be ready
            verbosity: 0 reports only final events, 1 adds DEPLOYING,
                2 adds REPLICAS_UPDATED and progress while the controller lags
            include_status: Attach status snapshots to events
            queue_size: Capacity of the event queue
        """
        self.timeout = timeout
        self.check_interval = check_interval
        self.strict = strict
        self.verbosity = verbosity
        self.include_status = include_status
        self._queue: asyncio.Queue[RolloutEvent] = asyncio.Queue(maxsize=queue_size)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RolloutTracker":
        """Create a tracker from driver settings."""
        return cls(
            timeout=settings.rollout_timeout_seconds,
            check_interval=settings.check_interval_seconds,
            strict=settings.strict,
            verbosity=settings.verbosity,
            include_status=settings.include_status,
            queue_size=settings.event_queue_size,
        )

    @property
    def active_sessions(self) -> int:
        """Number of sessions still running."""
        return sum(1 for task in self._tasks if not task.done())

    @property
    def pending(self) -> int:
        """Number of undelivered events."""
        return self._queue.qsize()

    def track(self, gateway: ResourceGateway, workload: dict[str, Any]) -> asyncio.Task:
        """
        Start tracking the rollout of a Deployment.

        Args:
            gateway: Gateway used to poll the Deployment
            workload: Deployment manifest returned by the triggering change

        Returns:
            The session task (must be called from a running event loop)
        """
        meta = workload.get("metadata") or {}
        loop = asyncio.get_running_loop()
        session = RolloutSession(
            namespace=meta.get("namespace", ""),
            name=meta.get("name", ""),
            watched_generation=meta.get("generation") or 0,
            deadline=loop.time() + self.timeout,
        )

        task = asyncio.create_task(
            self._run(gateway, session), name=f"rollout:{session.key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            f"Tracking rollout of {session.key} at generation {session.watched_generation}"
        )
        return task

    async def next_event(self, timeout: Optional[float] = None) -> RolloutEvent:
        """
        Wait for the next event.

        Raises:
            TimeoutError: If no event arrives within ``timeout`` seconds
        """
        return await asyncio.wait_for(self._queue.get(), timeout)

    async def events(self) -> AsyncIterator[RolloutEvent]:
        """Yield events as they arrive, forever."""
        while True:
            yield await self._queue.get()

    async def drain(self) -> AsyncIterator[RolloutEvent]:
        """Yield events until all sessions have finished and the queue is empty."""
        while True:
            if not self._queue.empty():
                yield self._queue.get_nowait()
                continue

            running = {task for task in self._tasks if not task.done()}
            if not running:
                return

            getter = asyncio.ensure_future(self._queue.get())
            try:
                await asyncio.wait({getter, *running}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                yield getter.result()

    async def wait_closed(self) -> None:
        """Wait for every running session to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every running session."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _event(self, session: RolloutSession, status: Optional[WorkloadStatus], **kwargs: Any) -> RolloutEvent:
        return RolloutEvent(
            phase=session.phase,
            namespace=session.namespace,
            name=session.name,
            status=status if self.include_status else None,
            **kwargs,
        )

    async def _post(self, session: RolloutSession, event: RolloutEvent) -> None:
        """Enqueue an event, blocking no longer than the session deadline."""
        remaining = session.deadline - asyncio.get_running_loop().time()
        try:
            if remaining <= 0:
                self._queue.put_nowait(event)
            else:
                await asyncio.wait_for(self._queue.put(event), remaining)
        except (asyncio.QueueFull, asyncio.TimeoutError):
            logger.warning(
                f"Dropped {event.phase.name} event for {session.key}: event queue is full"
            )

    def _post_nowait(self, session: RolloutSession, event: RolloutEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Dropped {event.phase.name} event for {session.key}: event queue is full"
            )

    def _advance(self, session: RolloutSession, status: WorkloadStatus) -> list[RolloutEvent]:
        """Advance as far as the snapshot allows, returning progress events."""
        events = []
        while session.phase in TRANSITIONS:
            transition = TRANSITIONS[session.phase]
            if not transition.condition(status, self.strict):
                break

            session.phase = transition.target
            logger.debug(f"Rollout of {session.key} entered {session.phase.name}")
            if transition.target == RolloutPhase.REPLICAS_READY:
                session.last_status = status
            elif (
                transition.min_verbosity is not None
                and self.verbosity >= transition.min_verbosity
            ):
                events.append(self._event(session, status))
        return events

    async def _poll(self, gateway: ResourceGateway, session: RolloutSession) -> None:
        """Poll until the rollout is ready or interrupted."""
        while True:
            obj = await asyncio.to_thread(
                gateway.get, DEPLOYMENT_GVK, session.namespace, session.name
            )
            status = WorkloadStatus.from_manifest(obj)
            session.polls += 1

            if status.generation != session.watched_generation:
                logger.warning(
                    f"Rollout of {session.key} interrupted: generation changed "
                    f"from {session.watched_generation} to {status.generation}"
                )
                session.phase = RolloutPhase.INTERRUPTED
                return

            stale = status.observed_generation != session.watched_generation
            if self.verbosity > 1 and (stale or session.polls == 1):
                await self._post(session, self._event(session, status))

            if stale:
                logger.debug(
                    f"Rollout of {session.key}: controller observed generation "
                    f"{status.observed_generation}, waiting for {session.watched_generation}"
                )
            elif status.paused:
                logger.warning(f"Rollout of {session.key} interrupted: deployment is paused")
                session.phase = RolloutPhase.INTERRUPTED
                return
            else:
                for event in self._advance(session, status):
                    await self._post(session, event)
                if session.phase == RolloutPhase.REPLICAS_READY:
                    return

            await asyncio.sleep(self.check_interval)

    async def _run(self, gateway: ResourceGateway, session: RolloutSession) -> None:
        """Session task body."""
        error: Optional[BaseException] = None
        scope = asyncio.timeout_at(session.deadline)
        try:
            async with scope:
                await self._poll(gateway, session)
        except asyncio.CancelledError:
            logger.info(f"Tracking of {session.key} cancelled in {session.phase.name}")
            self._post_nowait(
                session,
                self._event(
                    session, None, done=True, reason=TerminationReason.CANCELLED
                ),
            )
            raise
        except TimeoutError as e:
            if not scope.expired():
                error = e
        except Exception as e:
            error = e

        if error is not None:
            reason = TerminationReason.FAILED
            logger.error(f"Tracking of {session.key} failed: {error}", exc_info=error)
        elif session.phase == RolloutPhase.REPLICAS_READY:
            reason = TerminationReason.COMPLETED
            logger.info(f"Rollout of {session.key} completed")
        elif session.phase == RolloutPhase.INTERRUPTED:
            reason = TerminationReason.INTERRUPTED
        else:
            reason = TerminationReason.TIMED_OUT
            logger.warning(
                f"Rollout of {session.key} timed out after {self.timeout}s "
                f"in {session.phase.name}"
            )

        await self._post(
            session,
            self._event(
                session,
                session.last_status,
                error=str(error) if error is not None else None,
                error_type=type(error).__name__ if error is not None else None,
                done=True,
                reason=reason,
            ),
        )
