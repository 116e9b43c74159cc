"""Shared fixtures and in-memory fakes for the registrar tests."""

import asyncio
import logging
from typing import Optional

import pytest
import structlog

from citus_registrar.cluster.models import (
    MembershipRecord,
    NodeCandidate,
    NodeRole,
    ReadinessState,
)
from citus_registrar.config import RegistrarSettings
from citus_registrar.storage.membership import MembershipStoreError, RegistrationError


@pytest.fixture(autouse=True)
def quiet_structlog():
    """Keep log lines out of captured stdout and never cache loggers."""
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings() -> RegistrarSettings:
    """Settings with millisecond poll intervals."""
    return RegistrarSettings(
        coordinator_host="coordinator.railway.internal",
        user="postgres",
        password="secret",
        probe_interval=0.001,
        probe_attempts=3,
        service_probe_interval=0.001,
        service_probe_attempts=3,
        coordinator_poll_interval=0.001,
    )


def make_candidate(name: str, port: int = 5432) -> NodeCandidate:
    return NodeCandidate(
        logical_name=name,
        address=f"{name}.railway.internal",
        port=port,
        resolved_ip="10.0.0.1",
        resolved_via="name_service",
    )


class FakeResolver:
    """Returns a fixed candidate list and records calls."""

    def __init__(self, candidates: list[NodeCandidate]) -> None:
        self.candidates = candidates
        self.calls: list[tuple] = []

    async def discover(self, naming_schemes, max_index=20) -> list[NodeCandidate]:
        self.calls.append((list(naming_schemes), max_index))
        return list(self.candidates)


class FakeProber:
    """Returns a scripted readiness state per address (default: ready)."""

    def __init__(
        self,
        states: Optional[dict[str, ReadinessState]] = None,
        delays: Optional[dict[str, float]] = None,
        hang: Optional[set[str]] = None,
    ) -> None:
        self.states = states or {}
        self.delays = delays or {}
        self.hang = hang or set()
        self.probed: list[str] = []

    async def await_ready(self, candidate, network_policy=None, service_policy=None):
        self.probed.append(candidate.address)
        if candidate.address in self.hang:
            await asyncio.Event().wait()
        await asyncio.sleep(self.delays.get(candidate.address, 0))
        return self.states.get(candidate.address, ReadinessState.SERVICE_READY)


class FakeMembershipStore:
    """In-memory stand-in for the coordinator's pg_dist_node."""

    def __init__(
        self,
        members: Optional[list[MembershipRecord]] = None,
        reject: Optional[dict[str, str]] = None,
        ping_failures: int = 0,
    ) -> None:
        self.members: list[MembershipRecord] = list(members or [
            MembershipRecord(
                node_name="coordinator.railway.internal",
                port=5432,
                role=NodeRole.COORDINATOR,
                group_id=0,
            )
        ])
        self.reject = reject or {}
        self.ping_failures = ping_failures
        self.ping_calls = 0
        self.add_calls: list[tuple[str, int]] = []
        self.fail_is_registered: set[str] = set()
        self.fail_list = False
        self.crash_is_registered: dict[str, Exception] = {}
        self.crash_add: dict[str, Exception] = {}

    async def ping(self) -> bool:
        self.ping_calls += 1
        return self.ping_calls > self.ping_failures

    async def list_members(self) -> list[MembershipRecord]:
        if self.fail_list:
            raise MembershipStoreError("Could not list members: connection reset")
        return list(self.members)

    async def is_registered(self, node_name: str, port: int) -> bool:
        if node_name in self.crash_is_registered:
            raise self.crash_is_registered[node_name]
        if node_name in self.fail_is_registered:
            raise MembershipStoreError(f"Could not check registration of {node_name}:{port}")
        return any(m.node_name == node_name and m.port == port for m in self.members)

    async def add_member(self, node_name: str, port: int) -> None:
        self.add_calls.append((node_name, port))
        await asyncio.sleep(0)
        if node_name in self.crash_add:
            raise self.crash_add[node_name]
        if node_name in self.reject:
            raise RegistrationError(node_name, port, self.reject[node_name])
        self.members.append(
            MembershipRecord(
                node_name=node_name,
                port=port,
                role=NodeRole.WORKER,
                group_id=len(self.members),
            )
        )

    async def count_active_workers(self, members=None) -> int:
        members = self.members if members is None else members
        return sum(1 for m in members if m.role is NodeRole.WORKER and m.active)
