"""
Election ledger: election records, nullifier ledger and store backends
"""

from .election_ledger import (
    # Records
    ElectionStatus,
    Election,
    BallotRecord,
    QuorumMember,
    QuorumPolicy,

    # Stores
    NullifierLedger,
    LedgerStore,
    InMemoryLedgerStore,

    # Lifecycle
    ElectionLedger,
    build_election,
    fold_ballot,
)
from .sqlite_store import SQLiteLedgerStore

__all__ = [
    'ElectionStatus',
    'Election',
    'BallotRecord',
    'QuorumMember',
    'QuorumPolicy',
    'NullifierLedger',
    'LedgerStore',
    'InMemoryLedgerStore',
    'SQLiteLedgerStore',
    'ElectionLedger',
    'build_election',
    'fold_ballot',
]
