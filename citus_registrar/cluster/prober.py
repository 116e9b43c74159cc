"""Two-phase readiness wait for a discovered worker.

Phase one waits for the PostgreSQL port to accept TCP connections. Only then
does phase two try an authenticated database connection, so a node that is
still booting is not hammered with refused logins.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from citus_registrar.cluster.models import NodeCandidate, ReadinessState
from citus_registrar.cluster.retry import PollPolicy, Sleep, poll_until
from citus_registrar.config import RegistrarSettings
from citus_registrar.storage.database import build_url, check_connection

logger = structlog.get_logger(__name__)

NodeCheck = Callable[[NodeCandidate], Awaitable[bool]]


async def tcp_port_open(host: str, port: int, timeout: float = 5.0) -> bool:
    """Return True if a TCP connection to host:port succeeds within timeout."""
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class ReadinessProber:
    """Waits for workers to come up.

    Args:
        settings: Credentials, worker database and default poll policies.
        tcp_check: Override for the network phase check.
        service_check: Override for the database phase check.
        sleep: Coroutine used between attempts.
    """

    def __init__(
        self,
        settings: RegistrarSettings,
        tcp_check: Optional[NodeCheck] = None,
        service_check: Optional[NodeCheck] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._tcp_check = tcp_check or self._default_tcp_check
        self._service_check = service_check or self._default_service_check
        self._sleep = sleep

    async def _default_tcp_check(self, candidate: NodeCandidate) -> bool:
        return await tcp_port_open(
            candidate.address, candidate.port, timeout=self.settings.connect_timeout
        )

    async def _default_service_check(self, candidate: NodeCandidate) -> bool:
        url = build_url(
            host=candidate.address,
            port=candidate.port,
            user=self.settings.user,
            password=self.settings.password.get_secret_value(),
            database=self.settings.worker_database,
        )
        return await check_connection(url, timeout=self.settings.connect_timeout)

    async def await_ready(
        self,
        candidate: NodeCandidate,
        network_policy: Optional[PollPolicy] = None,
        service_policy: Optional[PollPolicy] = None,
    ) -> ReadinessState:
        """Wait for ``candidate`` to accept database connections.

        Returns:
            SERVICE_READY on success, NETWORK_UNREACHABLE if the port never
            opened, TIMED_OUT if the port opened but the database never
            accepted a connection.
        """
        network_policy = network_policy or self.settings.network_policy
        service_policy = service_policy or self.settings.service_policy

        await logger.ainfo("worker_probe_started", node=str(candidate))

        reachable = await poll_until(
            lambda: self._tcp_check(candidate),
            network_policy,
            label=f"tcp {candidate}",
            sleep=self._sleep,
        )
        if not reachable:
            await logger.awarning(
                "worker_unreachable",
                node=str(candidate),
                attempts=network_policy.max_attempts,
            )
            return ReadinessState.NETWORK_UNREACHABLE

        await logger.adebug("worker_port_open", node=str(candidate))

        ready = await poll_until(
            lambda: self._service_check(candidate),
            service_policy,
            label=f"postgres {candidate}",
            sleep=self._sleep,
        )
        if not ready:
            await logger.awarning(
                "worker_service_timeout",
                node=str(candidate),
                attempts=service_policy.max_attempts,
            )
            return ReadinessState.TIMED_OUT

        await logger.ainfo("worker_ready", node=str(candidate))
        return ReadinessState.SERVICE_READY
