"""Worker discovery and membership reconciliation.

  - resolver: finds candidate workers by name on the private network.
  - prober: waits for a candidate's port, then its database, to come up.
  - controller: runs discovery, probing and registration as one pass.

The prober and controller depend on ``citus_registrar.config`` and are
imported from their modules directly.
"""

from citus_registrar.cluster.models import (
    CandidateFailure,
    CandidateState,
    DiscoveryReport,
    MembershipRecord,
    NodeCandidate,
    NodeRole,
    ReadinessState,
    ReportOutcome,
)
from citus_registrar.cluster.resolver import DEFAULT_NAMING_SCHEMES, NamingScheme, Resolver
from citus_registrar.cluster.retry import PollPolicy, poll_until

__all__ = [
    "CandidateFailure",
    "CandidateState",
    "DiscoveryReport",
    "MembershipRecord",
    "NodeCandidate",
    "NodeRole",
    "ReadinessState",
    "ReportOutcome",
    "DEFAULT_NAMING_SCHEMES",
    "NamingScheme",
    "Resolver",
    "PollPolicy",
    "poll_until",
]
