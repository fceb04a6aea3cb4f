"""
Cryptographic primitives for the private-ballot protocol
Exponential ElGamal over edwards25519, nullifiers, commitments, DLEQ proofs
"""

from .ballot_crypto import (
    # Types
    Ciphertext,
    ElGamalKeypair,
    DecryptionShareProof,

    # Constants
    GROUP_ORDER,
    IDENTITY,
    GENERATOR,

    # Encryption
    generate_keypair,
    public_key_from_secret,
    encrypt,
    decrypt,
    homomorphic_add,
    homomorphic_sum,
    scale_ciphertext,

    # Nullifiers and commitments
    derive_nullifier,
    verify_nullifier,
    commit,
    verify_commitment,
    commit_vote,
    verify_vote_commitment,

    # Threshold decryption
    prove_decryption_share,
    verify_decryption_share,
    combine_decryption_shares,
    lagrange_coefficient,
)

__all__ = [
    'Ciphertext',
    'ElGamalKeypair',
    'DecryptionShareProof',
    'GROUP_ORDER',
    'IDENTITY',
    'GENERATOR',
    'generate_keypair',
    'public_key_from_secret',
    'encrypt',
    'decrypt',
    'homomorphic_add',
    'homomorphic_sum',
    'scale_ciphertext',
    'derive_nullifier',
    'verify_nullifier',
    'commit',
    'verify_commitment',
    'commit_vote',
    'verify_vote_commitment',
    'prove_decryption_share',
    'verify_decryption_share',
    'combine_decryption_shares',
    'lagrange_coefficient',
]
