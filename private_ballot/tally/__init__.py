"""
Tally finalization: quorum-signed, proof-checked Closed -> Tallied transition
"""

from .tally_finalization import (
    # Types
    DecryptionRequest,
    PartialDecryption,
    TallyProof,
    TallySubmission,
    TallyResult,

    # Verification
    TallyFinalizer,
    tally_message,
    verify_tally_submission,
)

__all__ = [
    'DecryptionRequest',
    'PartialDecryption',
    'TallyProof',
    'TallySubmission',
    'TallyResult',
    'TallyFinalizer',
    'tally_message',
    'verify_tally_submission',
]
