"""
Scan Orchestrator: Fan-Out/Fan-In over a bounded worker pool

Architecture:
- Probes are admitted FIFO (registration order) from one pending queue
- At most `concurrency` workers pull from that queue, so at most that many
  probes are running at any instant
- Each probe runs in its own task under its own timeout and child
  cancellation token; anything it raises is converted to a ProbeErrorRecord
  at this boundary and never reaches siblings or the caller
- One global deadline stops admission; in-flight probes get a grace period,
  then are force-cancelled and reported as DeadlineExceeded
- Outcomes stream out in completion order (async iteration) and join()
  resolves once every submitted probe has reported

A probe that ignores cancellation for longer than the grace period is
abandoned: its slot is freed, its eventual result is discarded and it is
reported as timed out.
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Deque, List, Optional, Sequence, Set, Tuple

import httpx
from pydantic import ValidationError

from .cancellation import CancellationToken
from .errors import ProbeError
from .models import Finding, ProbeErrorRecord, ProbeFailureReason
from .registry import ProbeDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
DEFAULT_DEADLINE = 300.0
DEFAULT_GRACE = 2.0

_DONE = object()


class ProbeEventKind(str, Enum):
    STARTED = "started"
    FINISHED = "finished"


@dataclass(frozen=True)
class ProbeEvent:
    """Instrumentation event; `running` is the pool occupancy after the change."""
    kind: ProbeEventKind
    probe_name: str
    running: int


ProbeHook = Callable[[ProbeEvent], None]


@dataclass(frozen=True)
class ProbeOutcome:
    """What one probe contributed: a finding batch, or an error."""
    probe_name: str
    findings: Tuple[Finding, ...] = ()
    error: Optional[ProbeErrorRecord] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_failure(exc: BaseException) -> ProbeFailureReason:
    """Map an exception raised inside a probe onto a ProbeFailureReason."""
    if isinstance(exc, ProbeError):
        return exc.reason
    if isinstance(exc, (httpx.HTTPError, OSError)):
        return ProbeFailureReason.NETWORK_FAILURE
    return ProbeFailureReason.UNEXPECTED_EXCEPTION


def normalize_findings(probe_name: str, result) -> Tuple[Finding, ...]:
    """
    Validate a probe's return value and stamp every finding with its probe.

    Raises TypeError / ValidationError for anything that isn't a list of
    findings (or finding-shaped dicts).
    """
    if not isinstance(result, (list, tuple)):
        raise TypeError(f"expected a list of findings, got {type(result).__name__}")
    findings = []
    for item in result:
        finding = item if isinstance(item, Finding) else Finding.model_validate(item)
        if finding.probe_name != probe_name:
            finding = finding.model_copy(update={"probe_name": probe_name})
        findings.append(finding)
    return tuple(findings)


class ScanOrchestrator:
    """
    Runs a list of probes against one target.

    One orchestrator may serve many scans: every run() gets its own queue,
    workers and token, so runs never share a pool.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        deadline: float = DEFAULT_DEADLINE,
        grace_period: float = DEFAULT_GRACE,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if deadline <= 0 or grace_period < 0:
            raise ValueError("deadline must be positive and grace_period non-negative")
        self.concurrency = concurrency
        self.deadline = deadline
        self.grace_period = grace_period

    def run(
        self,
        target: str,
        probes: Sequence[ProbeDescriptor],
        token: Optional[CancellationToken] = None,
        hook: Optional[ProbeHook] = None,
    ) -> "OrchestrationRun":
        """Start executing `probes`; must be called from a running event loop."""
        run = OrchestrationRun(
            target=target,
            probes=probes,
            token=token or CancellationToken(),
            concurrency=self.concurrency,
            deadline=self.deadline,
            grace_period=self.grace_period,
            hook=hook,
        )
        run.start()
        return run


class OrchestrationRun:
    """
    A single in-flight execution.

    Iterate it (`async for outcome in run`) to consume outcomes as they
    arrive; use a single consumer. join() waits for the whole run and returns
    every outcome regardless of whether anyone iterated.
    """

    def __init__(
        self,
        target: str,
        probes: Sequence[ProbeDescriptor],
        token: CancellationToken,
        concurrency: int,
        deadline: float,
        grace_period: float,
        hook: Optional[ProbeHook] = None,
    ):
        self.target = target
        self.token = token
        self.submitted = len(probes)
        self._pending: Deque[ProbeDescriptor] = deque(probes)
        self._concurrency = concurrency
        self._deadline = deadline
        self._grace = grace_period
        self._hook = hook
        self._outcomes: asyncio.Queue = asyncio.Queue()
        self._collected: List[ProbeOutcome] = []
        self._abandoned: Set[asyncio.Task] = set()
        self._running = 0
        self._deadline_at = 0.0
        self._supervisor: Optional[asyncio.Task] = None

    @property
    def running(self) -> int:
        return self._running

    @property
    def done(self) -> bool:
        return self._supervisor is not None and self._supervisor.done()

    @property
    def deadline_reached(self) -> bool:
        return asyncio.get_running_loop().time() >= self._deadline_at

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._deadline_at = loop.time() + self._deadline
        self._supervisor = loop.create_task(self._supervise())

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    async def join(self) -> List[ProbeOutcome]:
        return await self._supervisor

    async def aclose(self, reason: str = "closed") -> None:
        """Stop admitting probes, cancel in-flight ones and wait until the pool is idle."""
        self.token.cancel(reason)
        if self._supervisor is not None:
            await asyncio.wait({self._supervisor})

    def __aiter__(self) -> AsyncIterator[ProbeOutcome]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProbeOutcome]:
        while True:
            item = await self._outcomes.get()
            if item is _DONE:
                self._outcomes.put_nowait(_DONE)
                return
            yield item

    # -- pool ------------------------------------------------------------

    async def _supervise(self) -> List[ProbeOutcome]:
        worker_count = min(self._concurrency, len(self._pending))
        workers = [asyncio.create_task(self._worker()) for _ in range(worker_count)]
        logger.info(
            "Scheduling %d probes against %s (max %d concurrent, deadline %.1fs)",
            self.submitted, self.target, self._concurrency, self._deadline,
        )
        try:
            await asyncio.gather(*workers)
            if not self.token.cancelled:
                self._report_unadmitted()
        finally:
            for worker in workers:
                worker.cancel()
            self._pending.clear()
            self._outcomes.put_nowait(_DONE)
        return list(self._collected)

    def _admitting(self) -> bool:
        return not self.token.cancelled and not self.deadline_reached

    async def _worker(self) -> None:
        while self._pending and self._admitting():
            probe = self._pending.popleft()
            outcome = await self._execute(probe)
            if outcome is not None:
                self._emit(outcome)

    def _report_unadmitted(self) -> None:
        # Deadline hit with probes still queued: report them so the outcome
        # set stays exhaustive over what was submitted.
        while self._pending:
            probe = self._pending.popleft()
            self._emit(self._failure(
                probe, ProbeFailureReason.DEADLINE_EXCEEDED, "not started before the scan deadline", 0.0,
            ))

    def _emit(self, outcome: ProbeOutcome) -> None:
        self._collected.append(outcome)
        self._outcomes.put_nowait(outcome)

    # -- one probe -------------------------------------------------------

    async def _execute(self, probe: ProbeDescriptor) -> Optional[ProbeOutcome]:
        loop = asyncio.get_running_loop()
        probe_token = self.token.child()
        started = loop.time()
        local_deadline = started + probe.timeout
        hard_deadline = self._deadline_at + self._grace
        timed_by_probe = local_deadline <= hard_deadline

        task = loop.create_task(self._invoke(probe, probe_token))
        cancel_waiter = loop.create_task(self.token.wait())
        self._running += 1
        self._notify(ProbeEventKind.STARTED, probe.name)
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=max(0.0, min(local_deadline, hard_deadline) - loop.time()),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                if task.cancelled() and self.token.cancelled:
                    return None
                return self._settle(probe, task, loop.time() - started)

            probe_token.cancel("scan cancelled" if self.token.cancelled else "timeout")
            await self._reap(probe, task)
            if self.token.cancelled:
                logger.info("Probe %s cancelled with the scan", probe.name)
                return None

            if timed_by_probe:
                reason, detail = ProbeFailureReason.TIMEOUT, f"exceeded {probe.timeout:g}s probe timeout"
            else:
                reason, detail = ProbeFailureReason.DEADLINE_EXCEEDED, "force-cancelled at the scan deadline"
            logger.warning("Probe %s: %s", probe.name, detail)
            return self._failure(probe, reason, detail, loop.time() - started)
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()
            self.token.release(probe_token)
            self._running -= 1
            self._notify(ProbeEventKind.FINISHED, probe.name)

    async def _invoke(self, probe: ProbeDescriptor, token: CancellationToken):
        return await probe.run(self.target, token)

    async def _reap(self, probe: ProbeDescriptor, task: asyncio.Task) -> None:
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self._grace)
        if done:
            _consume(task)
            return
        logger.warning("Probe %s ignored cancellation for %.2fs; abandoning it", probe.name, self._grace)
        self._abandoned.add(task)
        task.add_done_callback(self._forget_abandoned)

    def _forget_abandoned(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        _consume(task)

    def _settle(self, probe: ProbeDescriptor, task: asyncio.Task, duration: float) -> ProbeOutcome:
        if task.cancelled():
            return self._failure(
                probe, ProbeFailureReason.UNEXPECTED_EXCEPTION, "probe cancelled itself", duration,
            )
        exc = task.exception()
        if exc is None:
            try:
                findings = normalize_findings(probe.name, task.result())
            except (TypeError, ValidationError) as e:
                logger.warning("Probe %s returned a malformed result: %s", probe.name, e)
                return self._failure(
                    probe, ProbeFailureReason.UNEXPECTED_EXCEPTION, f"malformed result: {e}", duration,
                )
            logger.info("Probe %s finished in %.2fs with %d findings", probe.name, duration, len(findings))
            return ProbeOutcome(probe_name=probe.name, findings=findings, duration=duration)

        reason = classify_failure(exc)
        if reason == ProbeFailureReason.UNEXPECTED_EXCEPTION:
            logger.error("Probe %s crashed", probe.name, exc_info=exc)
        else:
            logger.warning("Probe %s failed: %s", probe.name, exc)
        detail = exc.detail if isinstance(exc, ProbeError) else f"{type(exc).__name__}: {exc}"
        return self._failure(probe, reason, detail, duration)

    @staticmethod
    def _failure(probe: ProbeDescriptor, reason: ProbeFailureReason, detail: str, duration: float) -> ProbeOutcome:
        return ProbeOutcome(
            probe_name=probe.name,
            error=ProbeErrorRecord(probe_name=probe.name, reason=reason, detail=detail),
            duration=duration,
        )

    def _notify(self, kind: ProbeEventKind, probe_name: str) -> None:
        if self._hook is None:
            return
        try:
            self._hook(ProbeEvent(kind=kind, probe_name=probe_name, running=self._running))
        except Exception:
            logger.exception("Probe hook failed on %s/%s", kind.value, probe_name)


def _consume(task: asyncio.Task) -> None:
    """Retrieve a finished task's exception so asyncio doesn't log it as unhandled."""
    if not task.cancelled():
        task.exception()
