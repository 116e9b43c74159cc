"""Worker discovery on the private network.

Candidate names come from naming-scheme templates crossed with an index
range. Each name is resolved with three strategies in order:

  1. name-service lookup of ``<name><suffix>`` (what ``getent hosts`` does)
  2. name-service lookup of the bare ``<name>``
  3. ``host <name><suffix>``, scanning its output for an address even when
     the command exits non-zero (the platform resolver answers NOTIMP for
     some record types while still printing the A/AAAA records)

A name nobody resolves is simply not a worker.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import socket
import string
from typing import Awaitable, Callable, Iterable, Optional, Sequence

import structlog

from citus_registrar.cluster.models import NodeCandidate

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATES: tuple[str, ...] = (
    "worker{n}",
    "worker-{n}",
    "citus-worker{n}",
    "citus-worker-{n}",
)

_HOST_ADDRESS_RE = re.compile(r"has (?:IPv6 )?address (\S+)")

Lookup = Callable[[str], Awaitable[Optional[str]]]


class NamingScheme:
    """Maps an index to a logical worker name via a ``{n}`` template."""

    def __init__(self, template: str) -> None:
        fields = [
            name for _, name, _, _ in string.Formatter().parse(template) if name is not None
        ]
        if fields != ["n"]:
            raise ValueError(
                f"Naming scheme {template!r} must contain exactly one '{{n}}' placeholder"
            )
        self.template = template

    def __call__(self, index: int) -> str:
        return self.template.format(n=index)

    def __repr__(self) -> str:
        return f"NamingScheme({self.template!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, NamingScheme) and other.template == self.template

    def __hash__(self) -> int:
        return hash(self.template)


DEFAULT_NAMING_SCHEMES: tuple[NamingScheme, ...] = tuple(
    NamingScheme(t) for t in DEFAULT_TEMPLATES
)


def candidate_names(schemes: Iterable[NamingScheme], max_index: int = 20) -> list[str]:
    """Return every logical name to try, scheme-major, without duplicates."""
    seen: set[str] = set()
    names: list[str] = []
    for scheme in schemes:
        for index in range(1, max_index + 1):
            name = scheme(index)
            if name not in seen:
                seen.add(name)
                names.append(name)
    return names


# ── Lookup strategies ─────────────────────────────────────────────


async def name_service_lookup(hostname: str) -> Optional[str]:
    """Resolve through the system resolver (NSS), returning the first address."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError, OSError):
        return None
    for _family, _type, _proto, _canon, sockaddr in infos:
        return sockaddr[0]
    return None


def parse_host_output(output: str) -> Optional[str]:
    """Pull the first address out of ``host`` output, if it printed one."""
    match = _HOST_ADDRESS_RE.search(output)
    return match.group(1) if match else None


async def host_command_lookup(hostname: str) -> Optional[str]:
    """Run ``host`` and trust its printed addresses over its exit status."""
    executable = shutil.which("host")
    if executable is None:
        return None
    try:
        proc = await asyncio.create_subprocess_exec(
            executable, hostname,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError:
        return None
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    address = parse_host_output(stdout.decode(errors="replace"))
    if address and proc.returncode != 0:
        await logger.adebug(
            "host_lookup_nonzero_with_address",
            hostname=hostname,
            returncode=proc.returncode,
            address=address,
        )
    return address


# ── Resolver ──────────────────────────────────────────────────────


class Resolver:
    """Turns naming schemes into resolved ``NodeCandidate`` objects.

    Args:
        domain_suffix: Private-network suffix appended to every logical name.
        port: Worker PostgreSQL port recorded on each candidate.
        name_service: Lookup used for strategies 1 and 2.
        host_command: Lookup used for strategy 3.
        concurrency: Maximum lookups in flight.
        lookup_timeout: Seconds before a single lookup is abandoned.
    """

    def __init__(
        self,
        domain_suffix: str = ".railway.internal",
        port: int = 5432,
        name_service: Lookup = name_service_lookup,
        host_command: Lookup = host_command_lookup,
        concurrency: int = 20,
        lookup_timeout: float = 5.0,
    ) -> None:
        self.domain_suffix = domain_suffix
        self.port = port
        self._name_service = name_service
        self._host_command = host_command
        self.concurrency = concurrency
        self.lookup_timeout = lookup_timeout

    def qualify(self, logical_name: str) -> str:
        return f"{logical_name}{self.domain_suffix}"

    def _strategies(self, logical_name: str) -> list[tuple[str, Lookup, str]]:
        full_host = self.qualify(logical_name)
        strategies = [("name_service", self._name_service, full_host)]
        if full_host != logical_name:
            strategies.append(("name_service_direct", self._name_service, logical_name))
        strategies.append(("host_command", self._host_command, full_host))
        return strategies

    async def resolve(self, logical_name: str) -> Optional[NodeCandidate]:
        """Resolve one logical name, or return None if no strategy finds it."""
        for strategy, lookup, hostname in self._strategies(logical_name):
            try:
                address = await asyncio.wait_for(lookup(hostname), timeout=self.lookup_timeout)
            except asyncio.TimeoutError:
                await logger.adebug("lookup_timeout", hostname=hostname, strategy=strategy)
                continue
            if address:
                return NodeCandidate(
                    logical_name=logical_name,
                    address=self.qualify(logical_name),
                    port=self.port,
                    resolved_ip=address,
                    resolved_via=strategy,
                )
        return None

    async def discover(
        self,
        naming_schemes: Sequence[NamingScheme] = DEFAULT_NAMING_SCHEMES,
        max_index: int = 20,
    ) -> list[NodeCandidate]:
        """Find every worker reachable by name.

        Lookups run concurrently, but the result is always in scheme-then-index
        order so repeated runs against the same network agree.
        """
        names = candidate_names(naming_schemes, max_index)
        await logger.ainfo(
            "discovery_started",
            schemes=[s.template for s in naming_schemes],
            max_index=max_index,
            names=len(names),
        )

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(name: str) -> Optional[NodeCandidate]:
            async with semaphore:
                return await self.resolve(name)

        results = await asyncio.gather(*(bounded(name) for name in names))
        candidates = [c for c in results if c is not None]

        for candidate in candidates:
            await logger.ainfo(
                "worker_discovered",
                name=candidate.logical_name,
                address=candidate.address,
                ip=candidate.resolved_ip,
                via=candidate.resolved_via,
            )
        await logger.ainfo("discovery_finished", discovered=len(candidates))
        return candidates
