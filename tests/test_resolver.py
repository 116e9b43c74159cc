"""Tests for worker discovery."""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from citus_registrar.cluster.resolver import (
    DEFAULT_NAMING_SCHEMES,
    NamingScheme,
    Resolver,
    candidate_names,
    host_command_lookup,
    parse_host_output,
)

NOTIMP_OUTPUT = (
    "worker2.railway.internal has address 10.250.1.7\n"
    "worker2.railway.internal has IPv6 address fd12::7\n"
    "Host worker2.railway.internal not found: 4(NOTIMP)\n"
)


def table_lookup(table: dict[str, str], delays: Optional[dict[str, float]] = None):
    """Lookup that answers from a dict, optionally after a delay."""
    delays = delays or {}
    seen: list[str] = []

    async def lookup(hostname: str) -> Optional[str]:
        seen.append(hostname)
        await asyncio.sleep(delays.get(hostname, 0))
        return table.get(hostname)

    lookup.seen = seen  # type: ignore[attr-defined]
    return lookup


async def nothing(hostname: str) -> Optional[str]:
    return None


class TestNamingSchemes:
    """Test naming scheme parsing and expansion."""

    def test_default_schemes(self) -> None:
        """Test the default scheme order."""
        assert [s(3) for s in DEFAULT_NAMING_SCHEMES] == [
            "worker3", "worker-3", "citus-worker3", "citus-worker-3",
        ]

    @pytest.mark.parametrize("template", ["worker", "worker{}", "worker{i}", "{n}-{n}", "worker{"])
    def test_rejects_malformed_templates(self, template: str) -> None:
        """Test templates need exactly one index placeholder."""
        with pytest.raises(ValueError):
            NamingScheme(template)

    def test_candidate_names_scheme_then_index(self) -> None:
        """Test names are ordered by scheme then index."""
        names = candidate_names([NamingScheme("worker{n}"), NamingScheme("worker-{n}")], 2)

        assert names == ["worker1", "worker2", "worker-1", "worker-2"]

    def test_candidate_names_deduplicates(self) -> None:
        """Test repeated schemes produce each name once."""
        names = candidate_names([NamingScheme("worker{n}"), NamingScheme("worker{n}")], 3)

        assert names == ["worker1", "worker2", "worker3"]


class TestHostOutput:
    """Test the host command fallback."""

    def test_parses_address_despite_notimp(self) -> None:
        """Test an address is found despite a NOTIMP line."""
        assert parse_host_output(NOTIMP_OUTPUT) == "10.250.1.7"

    def test_parses_ipv6_only(self) -> None:
        """Test an IPv6-only answer is accepted."""
        assert parse_host_output("w1 has IPv6 address fd12::1\n") == "fd12::1"

    def test_no_address(self) -> None:
        """Test output without an address yields nothing."""
        assert parse_host_output("Host worker9.railway.internal not found: 3(NXDOMAIN)") is None

    @pytest.mark.asyncio
    async def test_nonzero_exit_with_address_still_resolves(self) -> None:
        """Test printed addresses win over a nonzero exit status."""
        proc = MagicMock()
        proc.returncode = 1
        proc.communicate = AsyncMock(return_value=(NOTIMP_OUTPUT.encode(), None))

        with patch("citus_registrar.cluster.resolver.shutil.which", return_value="/usr/bin/host"), \
                patch(
                    "citus_registrar.cluster.resolver.asyncio.create_subprocess_exec",
                    AsyncMock(return_value=proc),
                ):
            address = await host_command_lookup("worker2.railway.internal")

        assert address == "10.250.1.7"

    @pytest.mark.asyncio
    async def test_cancelled_lookup_reaps_child(self) -> None:
        """Test a cancelled lookup kills the host process and waits for it."""
        proc = MagicMock()
        proc.returncode = None

        async def hang():
            await asyncio.Event().wait()

        proc.communicate = AsyncMock(side_effect=hang)
        proc.wait = AsyncMock(return_value=-9)

        with patch("citus_registrar.cluster.resolver.shutil.which", return_value="/usr/bin/host"), \
                patch(
                    "citus_registrar.cluster.resolver.asyncio.create_subprocess_exec",
                    AsyncMock(return_value=proc),
                ):
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(host_command_lookup("worker1.railway.internal"), 0.05)

        proc.kill.assert_called_once()
        proc.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_host_binary(self) -> None:
        """Test a missing host binary yields nothing."""
        with patch("citus_registrar.cluster.resolver.shutil.which", return_value=None):
            assert await host_command_lookup("worker1.railway.internal") is None


class TestResolver:
    """Test candidate discovery."""

    @pytest.mark.asyncio
    async def test_discovery_order_is_deterministic(self) -> None:
        """Test results keep scheme and index order."""
        # Later names resolve faster; output order must not change.
        table = {
            "worker1.railway.internal": "10.0.0.1",
            "worker3.railway.internal": "10.0.0.3",
            "citus-worker-2.railway.internal": "10.0.0.9",
        }
        delays = {"worker1.railway.internal": 0.03, "worker3.railway.internal": 0.01}
        resolver = Resolver(name_service=table_lookup(table, delays), host_command=nothing)

        first = await resolver.discover(DEFAULT_NAMING_SCHEMES, max_index=3)
        second = await resolver.discover(DEFAULT_NAMING_SCHEMES, max_index=3)

        expected = ["worker1", "worker3", "citus-worker-2"]
        assert [c.logical_name for c in first] == expected
        assert [c.logical_name for c in second] == expected

    @pytest.mark.asyncio
    async def test_candidate_fields(self) -> None:
        """Test the fields of a discovered candidate."""
        resolver = Resolver(
            domain_suffix=".railway.internal",
            port=6432,
            name_service=table_lookup({"worker1.railway.internal": "10.0.0.1"}),
            host_command=nothing,
        )

        [candidate] = await resolver.discover([NamingScheme("worker{n}")], max_index=2)

        assert candidate.logical_name == "worker1"
        assert candidate.address == "worker1.railway.internal"
        assert candidate.port == 6432
        assert candidate.resolved_ip == "10.0.0.1"
        assert candidate.resolved_via == "name_service"

    @pytest.mark.asyncio
    async def test_falls_back_to_bare_name(self) -> None:
        """Test the bare name is tried after the qualified one."""
        resolver = Resolver(
            name_service=table_lookup({"worker2": "10.0.0.2"}),
            host_command=nothing,
        )

        [candidate] = await resolver.discover([NamingScheme("worker{n}")], max_index=2)

        assert candidate.address == "worker2.railway.internal"
        assert candidate.resolved_via == "name_service_direct"

    @pytest.mark.asyncio
    async def test_falls_back_to_host_command(self) -> None:
        """Test the host command is the last strategy."""
        host = table_lookup({"worker1.railway.internal": "10.0.0.5"})
        resolver = Resolver(name_service=nothing, host_command=host)

        [candidate] = await resolver.discover([NamingScheme("worker{n}")], max_index=1)

        assert candidate.resolved_via == "host_command"
        assert host.seen == ["worker1.railway.internal"]

    @pytest.mark.asyncio
    async def test_slow_lookup_is_treated_as_missing(self) -> None:
        """Test a lookup past its timeout counts as not found."""
        async def hangs(hostname: str) -> Optional[str]:
            await asyncio.sleep(10)
            return "10.0.0.1"

        resolver = Resolver(name_service=hangs, host_command=nothing, lookup_timeout=0.01)

        assert await resolver.discover([NamingScheme("worker{n}")], max_index=2) == []

    @pytest.mark.asyncio
    async def test_nothing_resolves(self) -> None:
        """Test an empty result when no name resolves."""
        resolver = Resolver(name_service=nothing, host_command=nothing)

        assert await resolver.discover(DEFAULT_NAMING_SCHEMES, max_index=20) == []

    @pytest.mark.asyncio
    async def test_duplicate_schemes_resolve_once(self) -> None:
        """Test each name is looked up once."""
        lookup = table_lookup({"worker1.railway.internal": "10.0.0.1"})
        resolver = Resolver(name_service=lookup, host_command=nothing)

        found = await resolver.discover(
            [NamingScheme("worker{n}"), NamingScheme("worker{n}")], max_index=1
        )

        assert len(found) == 1
        assert lookup.seen.count("worker1.railway.internal") == 1
