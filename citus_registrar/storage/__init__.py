"""Coordinator access: the SQLAlchemy connection layer and the membership client."""

from citus_registrar.storage.database import Database, build_url, check_connection
from citus_registrar.storage.membership import (
    MembershipStore,
    MembershipStoreError,
    RegistrationError,
)

__all__ = [
    "Database",
    "build_url",
    "check_connection",
    "MembershipStore",
    "MembershipStoreError",
    "RegistrationError",
]
