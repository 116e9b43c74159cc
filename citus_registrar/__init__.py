"""Citus worker registrar.

Discovers worker nodes on a private network and registers each one exactly
once with a Citus coordinator.
"""

__version__ = "0.1.0"
