"""Value types exchanged between the resolver, prober, store and controller."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReadinessState(str, Enum):
    """Result of probing a candidate.

    Attributes:
        UNKNOWN: Not probed yet.
        NETWORK_UNREACHABLE: TCP port never opened within the probe budget.
        NETWORK_REACHABLE: TCP port open, database not confirmed yet.
        SERVICE_READY: Database accepted an authenticated connection.
        TIMED_OUT: TCP port open but the database never accepted a connection.
    """

    UNKNOWN = "unknown"
    NETWORK_UNREACHABLE = "network_unreachable"
    NETWORK_REACHABLE = "network_reachable"
    SERVICE_READY = "service_ready"
    TIMED_OUT = "timed_out"


class NodeRole(str, Enum):
    COORDINATOR = "coordinator"
    WORKER = "worker"


class CandidateState(str, Enum):
    """Per-candidate lifecycle inside one controller run."""

    DISCOVERED = "discovered"
    PROBING = "probing"
    READY = "ready"
    TIMED_OUT = "timed_out"
    UNREACHABLE = "unreachable"
    REGISTERED = "registered"
    SKIPPED_EXISTING = "skipped_existing"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    def can_transition_to(self, target: "CandidateState") -> bool:
        return target in _TRANSITIONS[self]


_TERMINAL_STATES = frozenset({
    CandidateState.REGISTERED,
    CandidateState.SKIPPED_EXISTING,
    CandidateState.FAILED,
})

# FAILED is reachable from every non-terminal state (deadline, store errors).
_TRANSITIONS: dict[CandidateState, frozenset[CandidateState]] = {
    CandidateState.DISCOVERED: frozenset({CandidateState.PROBING, CandidateState.FAILED}),
    CandidateState.PROBING: frozenset({
        CandidateState.READY,
        CandidateState.TIMED_OUT,
        CandidateState.UNREACHABLE,
        CandidateState.FAILED,
    }),
    CandidateState.READY: frozenset({
        CandidateState.REGISTERED,
        CandidateState.SKIPPED_EXISTING,
        CandidateState.FAILED,
    }),
    CandidateState.TIMED_OUT: frozenset({CandidateState.FAILED}),
    CandidateState.UNREACHABLE: frozenset({CandidateState.FAILED}),
    CandidateState.REGISTERED: frozenset(),
    CandidateState.SKIPPED_EXISTING: frozenset(),
    CandidateState.FAILED: frozenset(),
}


class NodeCandidate(BaseModel):
    """A worker found on the private network during this run.

    Attributes:
        logical_name: Service name as generated by a naming scheme (``worker3``).
        address: Host name registered with the coordinator (``worker3.railway.internal``).
        port: PostgreSQL port on the worker.
        resolved_ip: First address the lookup returned, if any.
        resolved_via: Which lookup strategy found the node.
    """

    model_config = ConfigDict(frozen=True)

    logical_name: str = Field(min_length=1)
    address: str = Field(min_length=1)
    port: int = Field(default=5432, gt=0, lt=65536)
    resolved_ip: Optional[str] = None
    resolved_via: Optional[str] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.address, self.port)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


class MembershipRecord(BaseModel):
    """One row of the coordinator's node metadata."""

    model_config = ConfigDict(frozen=True)

    node_name: str
    port: int
    role: NodeRole
    active: bool = True
    group_id: int = 0


class CandidateFailure(BaseModel):
    """A candidate that did not end up registered, and why."""

    model_config = ConfigDict(frozen=True)

    candidate: NodeCandidate
    reason: str
    state: Optional[ReadinessState] = None


class ReportOutcome(str, Enum):
    NO_WORKERS_FOUND = "no_workers_found"
    REGISTRATION_FAILURES = "registration_failures"
    OK = "ok"


class DiscoveryReport(BaseModel):
    """Summary of one discovery-and-registration pass.

    Attributes:
        coordinator: ``host:port`` of the coordinator that was reconciled.
        discovered: Candidates found by the resolver, in discovery order.
        registered: Candidates added to the cluster during this run.
        skipped_existing: Candidates that were already members.
        failed: Candidates that could not be registered, with reasons.
        members: Coordinator membership read after processing.
        active_worker_count: Active members with the worker role.
        warnings: Informational notes (e.g. nothing discovered).
    """

    model_config = ConfigDict(frozen=True)

    coordinator: str = ""
    discovered: tuple[NodeCandidate, ...] = ()
    registered: tuple[NodeCandidate, ...] = ()
    skipped_existing: tuple[NodeCandidate, ...] = ()
    failed: tuple[CandidateFailure, ...] = ()
    members: tuple[MembershipRecord, ...] = ()
    active_worker_count: int = 0
    warnings: tuple[str, ...] = ()
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def outcome(self) -> ReportOutcome:
        if not self.discovered:
            return ReportOutcome.NO_WORKERS_FOUND
        if self.failed:
            return ReportOutcome.REGISTRATION_FAILURES
        return ReportOutcome.OK

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-safe dictionary with counts."""
        data = self.model_dump(mode="json")
        data["outcome"] = self.outcome.value
        data["counts"] = {
            "discovered": len(self.discovered),
            "registered": len(self.registered),
            "skipped_existing": len(self.skipped_existing),
            "failed": len(self.failed),
            "active_workers": self.active_worker_count,
        }
        data["duration_seconds"] = round(self.duration_seconds, 3)
        return data
