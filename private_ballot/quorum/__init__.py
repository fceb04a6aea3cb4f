"""
Quorum: capability interfaces and reference threshold decryption / eligibility
"""

from .threshold_quorum import (
    # Interfaces
    EligibilityVerifier,
    DecryptionQuorum,

    # Key generation
    DistributedKeyGeneration,
    Dealing,
    evaluate_polynomial,
    verify_feldman_share,

    # Reference implementations
    QuorumMemberKeys,
    ThresholdDecryptionQuorum,
    AllowListEligibilityVerifier,
)

__all__ = [
    'EligibilityVerifier',
    'DecryptionQuorum',
    'DistributedKeyGeneration',
    'Dealing',
    'evaluate_polynomial',
    'verify_feldman_share',
    'QuorumMemberKeys',
    'ThresholdDecryptionQuorum',
    'AllowListEligibilityVerifier',
]
