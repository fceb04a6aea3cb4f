"""
Private-ballot protocol
Confidential, one-vote-per-voter elections with homomorphic tallying and
threshold-verified finalization
"""

from .errors import (
    BallotProtocolError,
    VoteRejected,
    FinalizationRejected,
    LedgerError,
    CryptoError,
)
from .config import SystemConfig, load_config, save_config
from .ledger import (
    Election,
    ElectionStatus,
    BallotRecord,
    ElectionLedger,
    InMemoryLedgerStore,
    SQLiteLedgerStore,
)
from .casting import VoteCastingProtocol, PreparedBallot, prepare_ballot
from .tally import TallyFinalizer, TallySubmission, TallyResult
from .quorum import ThresholdDecryptionQuorum, AllowListEligibilityVerifier
from .integrated_ballot_system import PrivateBallotSystem

__version__ = "1.0.0"

__all__ = [
    # Errors
    'BallotProtocolError',
    'VoteRejected',
    'FinalizationRejected',
    'LedgerError',
    'CryptoError',

    # Configuration
    'SystemConfig',
    'load_config',
    'save_config',

    # Ledger
    'Election',
    'ElectionStatus',
    'BallotRecord',
    'ElectionLedger',
    'InMemoryLedgerStore',
    'SQLiteLedgerStore',

    # Protocol
    'VoteCastingProtocol',
    'PreparedBallot',
    'prepare_ballot',
    'TallyFinalizer',
    'TallySubmission',
    'TallyResult',
    'ThresholdDecryptionQuorum',
    'AllowListEligibilityVerifier',
    'PrivateBallotSystem',
]
