"""
Error taxonomy for the private-ballot protocol.

Every check in vote casting and tally finalization fails the whole
operation with one of these exceptions; nothing is retried or downgraded
inside the core.
"""


class BallotProtocolError(Exception):
    """Base exception for the private-ballot protocol"""
    pass


# ============================================================================
# CRYPTO
# ============================================================================


class CryptoError(BallotProtocolError):
    """Base exception for cryptographic primitive failures"""
    pass


class InvalidPublicKey(CryptoError):
    """Public key is not a valid prime-order group element"""
    pass


class DecryptionFailed(CryptoError):
    """Plaintext is outside the searchable discrete-log range"""
    pass


class ThresholdViolation(CryptoError):
    """Not enough quorum members to reach the decryption threshold"""
    pass


# ============================================================================
# VOTE CASTING
# ============================================================================


class VoteRejected(BallotProtocolError):
    """A vote-casting request was rejected; no state was changed"""
    pass


class ElectionClosed(VoteRejected):
    """Vote submitted after closes_at or while the election is not open"""
    pass


class NullifierAlreadyUsed(VoteRejected):
    """Nullifier already consumed in this election (double vote / replay)"""
    pass


class InvalidCommitment(VoteRejected):
    """Commitment does not open to the submitted ciphertext"""
    pass


class InvalidEligibilityProof(VoteRejected):
    """Eligibility proof missing or rejected by the verifier"""
    pass


class InvalidSubmission(VoteRejected):
    """Malformed submission fields (lengths, types)"""
    pass


class InvalidCiphertext(CryptoError, VoteRejected):
    """Ciphertext component is not a valid group element"""
    pass


# ============================================================================
# TALLY FINALIZATION
# ============================================================================


class FinalizationRejected(BallotProtocolError):
    """A tally submission was rejected; the election stays Closed"""
    pass


class InvalidTallyProof(FinalizationRejected):
    """Proof does not attest that the accumulator decrypts to the tally"""
    pass


class InsufficientThresholdSignatures(FinalizationRejected):
    """Fewer valid quorum signatures than the configured threshold"""
    pass


class ElectionNotClosed(FinalizationRejected):
    """Election is still accepting votes"""
    pass


class TallyAlreadyFinalized(FinalizationRejected):
    """Election is already Tallied"""
    pass


# ============================================================================
# LEDGER AND CONFIGURATION
# ============================================================================


class LedgerError(BallotProtocolError):
    """Base exception for ledger store failures"""
    pass


class ElectionNotFound(LedgerError):
    pass


class ElectionAlreadyExists(LedgerError):
    pass


class InvalidStatusTransition(LedgerError):
    """Status transitions are monotonic: Open -> Closed -> Tallied"""
    pass


class ConcurrentModification(LedgerError):
    """Compare-and-swap on an election record lost against another writer"""
    pass


class InvalidElectionConfig(BallotProtocolError):
    """Election parameters are inconsistent"""
    pass


class Unauthorized(BallotProtocolError):
    """Requester is not the election authority"""
    pass


class ConfigError(BallotProtocolError):
    """Configuration file is malformed"""
    pass
