"""
Scan Lifecycle Manager

Owns every ScanRecord write. A scan moves

    Pending -> Running -> Completed | Failed | Cancelled

and never leaves a terminal state. Each change is a new immutable record
saved to the store, so status() and progress() are plain reads of the latest
snapshot.

The API, a worker and the sweeper may all write the same scan. Every write
after creation is a compare-and-set against the store, so the first terminal
status wins.

Failed is reserved for systemic problems (preflight, engine defects, lost
workers). Individual probe failures only ever show up in probe_errors.
"""
import asyncio
import functools
import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .aggregator import ResultAggregator
from .cancellation import CancellationToken
from .config import Settings, get_settings
from .errors import (
    InvalidTarget,
    InvalidTransition,
    NotCancellable,
    NotCompleted,
    NotFound,
    ScanActive,
    SystemicFailure,
)
from .models import ScanOptions, ScanPage, ScanProgress, ScanRecord, ScanStatus, utcnow
from .orchestrator import ProbeHook, ProbeOutcome, ScanOrchestrator
from .registry import ProbeRegistry, categories_for
from .scan_logger import ScanLogger
from .security import validate_target
from .store import InMemoryScanStore, ScanStore
from .validators import check_target_reachable

logger = logging.getLogger(__name__)

Preflight = Callable[[str], Awaitable[None]]

ALLOWED_TRANSITIONS: Dict[ScanStatus, Tuple[ScanStatus, ...]] = {
    ScanStatus.PENDING: (ScanStatus.RUNNING,),
    ScanStatus.RUNNING: (ScanStatus.COMPLETED, ScanStatus.FAILED, ScanStatus.CANCELLED),
    ScanStatus.COMPLETED: (),
    ScanStatus.FAILED: (),
    ScanStatus.CANCELLED: (),
}

STALE_REASON = "stale: worker lost"


class ScanManager:
    def __init__(
        self,
        registry: ProbeRegistry,
        store: Optional[ScanStore] = None,
        settings: Optional[Settings] = None,
        preflight: Optional[Preflight] = None,
        orchestrator_factory: Callable[..., ScanOrchestrator] = ScanOrchestrator,
        probe_hook: Optional[ProbeHook] = None,
        watch_store_cancel: bool = False,
    ):
        self.registry = registry
        self.store = store if store is not None else InMemoryScanStore()
        self.settings = settings or get_settings()
        self.preflight = preflight or functools.partial(
            check_target_reachable, allow_private=self.settings.allow_private_targets,
        )
        self.orchestrator_factory = orchestrator_factory
        self.probe_hook = probe_hook
        # Worker processes learn about cancellation through the store flag.
        self.watch_store_cancel = watch_store_cancel
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Creation and execution
    # ------------------------------------------------------------------

    def create(self, target: str, options: Optional[ScanOptions] = None) -> ScanRecord:
        """
        Validate the target and persist a Pending record with its probe list pinned.

        Raises InvalidTarget before anything is stored.
        """
        options = options or ScanOptions()
        try:
            target = validate_target(target, allow_private=self.settings.allow_private_targets)
        except InvalidTarget as e:
            logger.warning("Rejected scan target: %s", e)
            raise

        categories = categories_for(options.scan_type, options.enabled_categories)
        probes = self.registry.enabled(categories)
        # Worker time limits are sized from the configured deadline; a scan may shorten it, never extend it.
        deadline = min(
            options.deadline_seconds or self.settings.scan_deadline_seconds,
            self.settings.scan_deadline_seconds,
        )
        record = ScanRecord(
            scan_id=str(uuid.uuid4()),
            target=target,
            scan_type=options.scan_type,
            enabled_categories=tuple(categories) if categories is not None else None,
            probe_names=tuple(p.name for p in probes),
            probes_total=len(probes),
            concurrency=options.concurrency or self.settings.scan_concurrency,
            deadline_seconds=deadline,
            grace_seconds=options.grace_seconds or self.settings.scan_grace_seconds,
        )
        self.store.save(record)
        scan_log = ScanLogger(record.scan_id, self.store)
        scan_log.info(f"Scan created for {target} ({record.scan_type.value}, {record.probes_total} probes)")
        if options.deadline_seconds and options.deadline_seconds > deadline:
            scan_log.warning(f"Requested deadline {options.deadline_seconds:g}s capped at {deadline:g}s")
        return record

    def start(self, target: str, options: Optional[ScanOptions] = None) -> str:
        """Create a scan and run it on the current event loop. Returns the scan id."""
        record = self.create(target, options)
        scan_id = record.scan_id
        self._tokens[scan_id] = CancellationToken()
        task = asyncio.create_task(self.execute(scan_id))
        self._tasks[scan_id] = task
        task.add_done_callback(functools.partial(self._on_task_done, scan_id))
        return scan_id

    def _on_task_done(self, scan_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(scan_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Scan %s task crashed", scan_id, exc_info=task.exception())

    async def execute(self, scan_id: str) -> ScanRecord:
        """
        Drive a Pending scan to a terminal state and return the final record.

        Re-executing a scan that already finished is a no-op. If another
        writer (a sweeper, a time-limit handler) finishes the scan first, its
        record wins: probes are stopped and the stored record is returned.
        """
        record = self.store.load(scan_id)
        if record.status.is_terminal:
            return record
        if record.status != ScanStatus.PENDING:
            raise ScanActive(scan_id, record.status)

        token = self._tokens.setdefault(scan_id, CancellationToken())
        if self.store.cancel_requested(scan_id):
            token.cancel("cancel requested before start")
        scan_log = ScanLogger(scan_id, self.store)
        record = self._transition(record, ScanStatus.RUNNING)
        if record.status != ScanStatus.RUNNING:
            self._tokens.pop(scan_id, None)
            return record

        watcher = None
        run = None
        try:
            with self.registry.hold():
                try:
                    probes = self.registry.resolve(record.probe_names)
                except KeyError as e:
                    raise SystemicFailure(str(e.args[0])) from None

                if self.watch_store_cancel:
                    watcher = asyncio.create_task(self._watch_store(scan_id, token))

                if not token.cancelled:
                    scan_log.info(f"Preflight check for {record.target}")
                    await self._preflight(record.target, token)
                if token.cancelled:
                    scan_log.warning("Scan cancelled before any probe was dispatched")
                    return self._transition(record, ScanStatus.CANCELLED)

                aggregator = ResultAggregator(record)
                orchestrator = self.orchestrator_factory(
                    concurrency=record.concurrency,
                    deadline=record.deadline_seconds,
                    grace_period=record.grace_seconds,
                )
                scan_log.info(f"Dispatching {len(probes)} probes (concurrency {record.concurrency})")
                run = orchestrator.run(record.target, probes, token=token, hook=self.probe_hook)
                async for outcome in run:
                    record = aggregator.apply(outcome)
                    if not self.store.save_if_active(record):
                        token.cancel("finished elsewhere")
                        await run.aclose()
                        return self._superseded(record)
                    self._log_outcome(scan_log, outcome)
                await run.join()

            if token.cancelled:
                scan_log.warning(
                    f"Scan cancelled after {record.probes_completed}/{record.probes_total} probes"
                )
                return self._transition(record, ScanStatus.CANCELLED)
            scan_log.info(
                f"Scan completed: {record.total_findings} findings, {record.probe_error_count} probe errors"
            )
            return self._transition(record, ScanStatus.COMPLETED)

        except SystemicFailure as e:
            token.cancel("systemic failure")
            scan_log.error(f"Scan failed: {e}")
            return self._transition(record, ScanStatus.FAILED, failure_reason=str(e))
        except asyncio.CancelledError:
            token.cancel("shutdown")
            self._transition(record, ScanStatus.CANCELLED)
            scan_log.warning("Scan interrupted by shutdown")
            raise
        except Exception as e:
            token.cancel("engine error")
            logger.exception("Scan %s: engine error", scan_id)
            scan_log.error(f"Scan failed: engine error {type(e).__name__}")
            return self._transition(
                record, ScanStatus.FAILED, failure_reason=f"engine error: {type(e).__name__}: {e}",
            )
        finally:
            if watcher is not None:
                watcher.cancel()
            if run is not None and not run.done:
                await run.aclose()
            self._tokens.pop(scan_id, None)

    async def _preflight(self, target: str, token: CancellationToken) -> None:
        """Run the preflight check, giving up as soon as the scan is cancelled."""
        check = asyncio.ensure_future(self.preflight(target))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({check, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not check.done():
                check.cancel()
        if check in done:
            check.result()

    async def _watch_store(self, scan_id: str, token: CancellationToken) -> None:
        """Cancel the local run when the store says to: a cancel flag, or the scan finished elsewhere."""
        while not token.cancelled:
            if self.store.cancel_requested(scan_id):
                logger.info("Scan %s: cancel flag observed", scan_id)
                token.cancel("cancelled by user")
                return
            try:
                finished = self.store.load(scan_id).status.is_terminal
            except NotFound:
                finished = True
            if finished:
                logger.warning("Scan %s was finished by another writer; stopping probes", scan_id)
                token.cancel("finished elsewhere")
                return
            await asyncio.sleep(self.settings.cancel_poll_seconds)

    @staticmethod
    def _log_outcome(scan_log: ScanLogger, outcome: ProbeOutcome) -> None:
        if outcome.ok:
            scan_log.info(f"Probe {outcome.probe_name} completed: {len(outcome.findings)} findings")
        else:
            scan_log.warning(
                f"Probe {outcome.probe_name} failed ({outcome.error.reason.value}): {outcome.error.detail}"
            )

    def _transition(self, record: ScanRecord, status: ScanStatus, **updates) -> ScanRecord:
        """
        Move a live scan to `status` and persist it.

        The write is a compare-and-set against the store: if the stored scan is
        already terminal, nothing is written and the stored record is returned.
        """
        if status not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransition(record.scan_id, record.status, status)
        updates["status"] = status
        if status == ScanStatus.RUNNING:
            updates["start_time"] = utcnow()
        elif status.is_terminal:
            updates["end_time"] = utcnow()
        updated = record.model_copy(update=updates)
        if not self.store.save_if_active(updated):
            return self._superseded(record)
        ScanLogger(record.scan_id, self.store).phase(status.value)
        return updated

    def _superseded(self, record: ScanRecord) -> ScanRecord:
        try:
            current = self.store.load(record.scan_id)
        except NotFound:
            current = record
        logger.warning(
            "Scan %s already %s in the store; keeping that record", record.scan_id, current.status.value,
        )
        return current

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    def cancel(self, scan_id: str) -> ScanRecord:
        """
        Request cancellation.

        Accepted while Pending or Running; the scan reaches Cancelled once its
        in-flight probes unwind. Raises NotFound / NotCancellable.
        """
        record = self.store.load(scan_id)
        if record.status.is_terminal:
            raise NotCancellable(scan_id, record.status)
        self.store.request_cancel(scan_id)
        token = self._tokens.get(scan_id)
        if token is not None:
            token.cancel("cancelled by user")
        ScanLogger(scan_id, self.store).warning("Cancellation requested")
        return record

    def status(self, scan_id: str) -> ScanRecord:
        return self.store.load(scan_id)

    def progress(self, scan_id: str) -> ScanProgress:
        record = self.store.load(scan_id)
        return ScanProgress(
            scan_id=scan_id,
            status=record.status,
            probes_completed=record.probes_completed,
            probes_total=record.probes_total,
        )

    def results(self, scan_id: str) -> ScanRecord:
        record = self.store.load(scan_id)
        if record.status != ScanStatus.COMPLETED:
            raise NotCompleted(scan_id, record.status)
        return record

    def delete(self, scan_id: str) -> None:
        record = self.store.load(scan_id)
        if not record.status.is_terminal:
            raise ScanActive(scan_id, record.status)
        self.store.delete(scan_id)
        logger.info("Deleted scan %s", scan_id)

    def list_scans(
        self,
        status: Optional[ScanStatus] = None,
        target: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> ScanPage:
        records = self.store.list_records()
        if status is not None:
            records = [r for r in records if r.status == status]
        if target:
            needle = target.lower()
            records = [r for r in records if needle in r.target.lower()]
        start = (page - 1) * limit
        return ScanPage(items=records[start:start + limit], total=len(records), page=page, limit=limit)

    def logs(self, scan_id: str) -> List[str]:
        self.store.load(scan_id)
        return self.store.logs(scan_id)

    async def wait(self, scan_id: str, timeout: Optional[float] = None, poll_interval: float = 0.05) -> ScanRecord:
        """Wait until the scan is terminal and return the final record."""

        async def _until_terminal() -> ScanRecord:
            while True:
                task = self._tasks.get(scan_id)
                if task is not None:
                    await asyncio.wait({task})
                record = self.store.load(scan_id)
                if record.status.is_terminal:
                    return record
                await asyncio.sleep(poll_interval)

        return await asyncio.wait_for(_until_terminal(), timeout)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def mark_failed(self, scan_id: str, reason: str) -> ScanRecord:
        """
        Force a non-terminal scan to Failed, e.g. when its worker was lost.

        A Pending scan passes through Running first so the state machine
        holds. Terminal scans are returned unchanged.
        """
        record = self.store.load(scan_id)
        if record.status.is_terminal:
            return record
        if record.status == ScanStatus.PENDING:
            record = self._transition(record, ScanStatus.RUNNING)
            if record.status.is_terminal:
                return record
        ScanLogger(scan_id, self.store).error(f"Scan failed: {reason}")
        return self._transition(record, ScanStatus.FAILED, failure_reason=reason)

    def sweep_stale(self, older_than: Optional[timedelta] = None) -> List[str]:
        """
        Fail Running scans that no live run can still own.

        A scan is stale once it has been Running longer than the cutoff and
        longer than its own deadline plus grace, and no local task owns it.
        """
        base = older_than or timedelta(minutes=self.settings.stale_scan_minutes)
        now = utcnow()
        swept = []
        for record in self.store.list_records():
            if record.status != ScanStatus.RUNNING or record.scan_id in self._tasks:
                continue
            limit = max(base, timedelta(seconds=record.deadline_seconds + record.grace_seconds))
            if now - record.start_time < limit:
                continue
            if self.mark_failed(record.scan_id, STALE_REASON).failure_reason == STALE_REASON:
                swept.append(record.scan_id)
        if swept:
            logger.info("Sweeper recovered %d stale scans", len(swept))
        return swept

    async def shutdown(self) -> None:
        """Cancel every scan this manager is running and wait for them to settle."""
        for token in list(self._tokens.values()):
            token.cancel("shutdown")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
