"""One discovery-and-registration pass against a Citus coordinator.

Pipeline per run:
  1. Wait for the coordinator to answer queries (unbounded by default).
  2. Discover candidate workers by name.
  3. For every candidate, concurrently: wait until ready, then register it
     unless the coordinator already knows it.
  4. Read back the membership table for the report.

Every per-candidate problem ends up in the report. Only a coordinator that
never comes up (when a bound is configured) fails the run. Re-running is
safe: already-registered workers are skipped.
"""

import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

import structlog

from citus_registrar.cluster.models import (
    CandidateFailure,
    CandidateState,
    DiscoveryReport,
    MembershipRecord,
    NodeCandidate,
    ReadinessState,
)
from citus_registrar.cluster.prober import ReadinessProber
from citus_registrar.cluster.resolver import Resolver
from citus_registrar.cluster.retry import Sleep, poll_until
from citus_registrar.config import RegistrarSettings
from citus_registrar.storage.membership import (
    MembershipStore,
    MembershipStoreError,
    RegistrationError,
)

logger = structlog.get_logger(__name__)

NO_WORKERS_WARNING = (
    "No workers discovered. Ensure worker services exist (worker1, worker2, ...)."
)


class CoordinatorUnavailableError(Exception):
    """Raised when the coordinator did not answer within the configured attempts."""


class CandidateRun:
    """Tracks one candidate through a run; states only move forward."""

    def __init__(self, candidate: NodeCandidate) -> None:
        self.candidate = candidate
        self.state = CandidateState.DISCOVERED
        self.readiness = ReadinessState.UNKNOWN
        self.reason: Optional[str] = None

    def advance(self, target: CandidateState) -> None:
        if not self.state.can_transition_to(target):
            raise ValueError(
                f"{self.candidate}: illegal transition {self.state.value} -> {target.value}"
            )
        self.state = target

    def fail(self, reason: str) -> None:
        self.advance(CandidateState.FAILED)
        self.reason = reason

    def failure(self) -> CandidateFailure:
        return CandidateFailure(
            candidate=self.candidate,
            reason=self.reason or "unknown failure",
            state=self.readiness,
        )


class ReconciliationController:
    """Discovers workers and makes sure each is a cluster member.

    Args:
        settings: Registrar configuration.
        resolver: Finds candidate workers.
        prober: Waits for candidates to be ready.
        store: Coordinator membership client (already connected).
        sleep: Coroutine used between coordinator polls.
    """

    def __init__(
        self,
        settings: RegistrarSettings,
        resolver: Resolver,
        prober: ReadinessProber,
        store: MembershipStore,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.prober = prober
        self.store = store
        self._sleep = sleep

    @property
    def coordinator(self) -> str:
        return f"{self.settings.coordinator_host}:{self.settings.coordinator_port}"

    async def wait_for_coordinator(self) -> None:
        """Block until the coordinator answers.

        Raises:
            CoordinatorUnavailableError: If ``coordinator_max_attempts`` is set
                and every attempt failed.
        """
        policy = self.settings.coordinator_policy
        await logger.ainfo(
            "waiting_for_coordinator",
            coordinator=self.coordinator,
            interval=policy.interval,
            max_attempts=policy.max_attempts,
        )
        if not await poll_until(
            self.store.ping, policy, label="coordinator", sleep=self._sleep
        ):
            raise CoordinatorUnavailableError(
                f"Coordinator {self.coordinator} not reachable after "
                f"{policy.max_attempts} attempts"
            )
        await logger.ainfo("coordinator_ready", coordinator=self.coordinator)

    async def run(self) -> DiscoveryReport:
        """Run one reconciliation pass and return its report."""
        started_at = datetime.now(timezone.utc)
        warnings: list[str] = []

        await self.wait_for_coordinator()

        discovered = await self.resolver.discover(
            self.settings.schemes(), self.settings.max_index
        )

        # One pipeline per (address, port) keeps add_member to a single call per node.
        unique: "OrderedDict[tuple[str, int], NodeCandidate]" = OrderedDict()
        for candidate in discovered:
            unique.setdefault(candidate.key, candidate)
        runs = [CandidateRun(c) for c in unique.values()]

        if not runs:
            warnings.append(NO_WORKERS_WARNING)
            await logger.awarning("no_workers_discovered")
        else:
            await logger.ainfo("processing_workers", count=len(runs))
            await self._process_all(runs)

        members: list[MembershipRecord] = []
        active_workers = 0
        try:
            members = await self.store.list_members()
            active_workers = await self.store.count_active_workers(members)
        except MembershipStoreError as exc:
            warnings.append(f"Could not read final membership: {exc}")
            await logger.awarning("final_membership_unavailable", error=str(exc))

        report = DiscoveryReport(
            coordinator=self.coordinator,
            discovered=tuple(discovered),
            registered=tuple(
                r.candidate for r in runs if r.state is CandidateState.REGISTERED
            ),
            skipped_existing=tuple(
                r.candidate for r in runs if r.state is CandidateState.SKIPPED_EXISTING
            ),
            failed=tuple(r.failure() for r in runs if r.state is CandidateState.FAILED),
            members=tuple(members),
            active_worker_count=active_workers,
            warnings=tuple(warnings),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )
        await logger.ainfo(
            "reconciliation_finished",
            outcome=report.outcome.value,
            discovered=len(report.discovered),
            registered=len(report.registered),
            skipped=len(report.skipped_existing),
            failed=len(report.failed),
            active_workers=active_workers,
        )
        return report

    # ── Per-candidate pipeline ────────────────────────────────────

    async def _process_all(self, runs: list[CandidateRun]) -> None:
        semaphore = asyncio.Semaphore(self.settings.concurrency)
        tasks = {asyncio.create_task(self._process(run, semaphore)): run for run in runs}
        deadline = self.settings.worker_phase_deadline

        done, pending = await asyncio.wait(list(tasks), timeout=deadline)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # A crashed pipeline fails its own candidate, never the whole run.
        for task in done:
            exc = task.exception()
            run = tasks[task]
            if exc is None or run.state.is_terminal:
                continue
            await logger.aerror(
                "worker_pipeline_crashed",
                node=str(run.candidate),
                state=run.state.value,
                error=repr(exc),
            )
            run.fail(f"unexpected error: {exc!r}")

        for run in runs:
            if not run.state.is_terminal:
                await logger.awarning(
                    "worker_deadline_exceeded",
                    node=str(run.candidate),
                    state=run.state.value,
                    deadline=deadline,
                )
                run.fail(f"deadline of {deadline:g}s exceeded while {run.state.value}")

    async def _process(self, run: CandidateRun, semaphore: asyncio.Semaphore) -> None:
        candidate = run.candidate
        async with semaphore:
            run.advance(CandidateState.PROBING)
            run.readiness = await self.prober.await_ready(candidate)

            if run.readiness is ReadinessState.TIMED_OUT:
                run.advance(CandidateState.TIMED_OUT)
                run.fail(
                    f"timed out waiting for PostgreSQL after "
                    f"{self.settings.service_probe_attempts} attempts"
                )
                return
            if run.readiness is ReadinessState.NETWORK_UNREACHABLE:
                run.advance(CandidateState.UNREACHABLE)
                run.fail(
                    f"network unreachable: port {candidate.port} did not open after "
                    f"{self.settings.probe_attempts} attempts"
                )
                return
            if run.readiness is not ReadinessState.SERVICE_READY:
                run.fail(f"unexpected readiness state {run.readiness.value}")
                return

            run.advance(CandidateState.READY)
            await self._register(run)

    async def _register(self, run: CandidateRun) -> None:
        candidate = run.candidate
        try:
            if await self.store.is_registered(candidate.address, candidate.port):
                run.advance(CandidateState.SKIPPED_EXISTING)
                await logger.ainfo("worker_already_registered", node=str(candidate))
                return
            await self.store.add_member(candidate.address, candidate.port)
        except RegistrationError as exc:
            run.fail(exc.reason)
            return
        except MembershipStoreError as exc:
            await logger.aerror("membership_store_error", node=str(candidate), error=str(exc))
            run.fail(str(exc))
            return

        run.advance(CandidateState.REGISTERED)
