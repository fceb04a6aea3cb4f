"""
Ballot Cryptography Primitives
==============================
Additively homomorphic (exponential) ElGamal over the prime-order subgroup of
edwards25519, Keccak-256 nullifiers and commitments, and Chaum-Pedersen
proofs for threshold partial decryptions.

Group elements are 32-byte canonical compressed points. Every point that
arrives from outside goes through validate_point() before it is used.
"""

import hashlib
import hmac
import logging
import secrets
import struct
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple, Union

from Crypto.Hash import keccak
from nacl.bindings import (
    crypto_core_ed25519_add,
    crypto_core_ed25519_is_valid_point,
    crypto_core_ed25519_sub,
    crypto_scalarmult_ed25519_base_noclamp,
    crypto_scalarmult_ed25519_noclamp,
)

from private_ballot.errors import (
    DecryptionFailed,
    InvalidCiphertext,
    InvalidPublicKey,
)

logger = logging.getLogger(__name__)

# ============================================================================
# GROUP CONSTANTS
# ============================================================================

# Order of the edwards25519 prime-order subgroup
GROUP_ORDER = 2**252 + 27742317777372353535851937790883648493

POINT_BYTES = 32
SCALAR_BYTES = 32
HASH_BYTES = 32

# Compressed encoding of the neutral element (x=0, y=1)
IDENTITY = b"\x01" + b"\x00" * 31

# Default discrete-log search bound, enough for per-option vote counts
DEFAULT_MAX_PLAINTEXT = 10_000

DLEQ_DOMAIN = b"private-ballot/dleq/v1"

BytesLike = Union[bytes, bytearray]


def _scalar_bytes(scalar: int) -> bytes:
    return (scalar % GROUP_ORDER).to_bytes(SCALAR_BYTES, "little")


def _as_scalar(value: Union[int, BytesLike]) -> int:
    """Accept an int or 32 little-endian bytes, reduced mod the group order"""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != SCALAR_BYTES:
            raise ValueError(
                f"Scalar must be {SCALAR_BYTES} bytes, got {len(value)}")
        return int.from_bytes(bytes(value), "little") % GROUP_ORDER
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"Scalar must be int or bytes, got {type(value).__name__}")
    return value % GROUP_ORDER


def _require_bytes(value: BytesLike, length: int, name: str) -> bytes:
    if not isinstance(value, (bytes, bytearray)) or len(value) != length:
        raise ValueError(f"{name} must be {length} bytes")
    return bytes(value)


def constant_time_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


# ============================================================================
# GROUP OPERATIONS
# ============================================================================


def validate_point(point: BytesLike) -> bool:
    """True for the identity or a canonical point in the prime-order subgroup"""
    if not isinstance(point, (bytes, bytearray)) or len(point) != POINT_BYTES:
        return False
    point = bytes(point)
    if point == IDENTITY:
        return True
    return bool(crypto_core_ed25519_is_valid_point(point))


def point_add(a: bytes, b: bytes) -> bytes:
    if a == IDENTITY:
        return b
    if b == IDENTITY:
        return a
    return crypto_core_ed25519_add(a, b)


def point_neg(point: bytes) -> bytes:
    if point == IDENTITY:
        return IDENTITY
    return scalar_mult(GROUP_ORDER - 1, point)


def point_sub(a: bytes, b: bytes) -> bytes:
    if b == IDENTITY:
        return a
    if a == b:
        return IDENTITY
    if a == IDENTITY:
        return point_neg(b)
    return crypto_core_ed25519_sub(a, b)


def scalar_mult(scalar: int, point: bytes) -> bytes:
    """scalar·point; libsodium refuses a zero scalar or identity, both map to identity"""
    scalar %= GROUP_ORDER
    if scalar == 0 or point == IDENTITY:
        return IDENTITY
    return crypto_scalarmult_ed25519_noclamp(_scalar_bytes(scalar), point)


def base_mult(scalar: int) -> bytes:
    """scalar·G"""
    scalar %= GROUP_ORDER
    if scalar == 0:
        return IDENTITY
    return crypto_scalarmult_ed25519_base_noclamp(_scalar_bytes(scalar))


GENERATOR = base_mult(1)


def random_scalar() -> int:
    """Uniform non-zero scalar from the OS CSPRNG"""
    return secrets.randbelow(GROUP_ORDER - 1) + 1


def lagrange_coefficient(index: int, indices: Iterable[int], x: int = 0) -> int:
    """Lagrange basis polynomial for `index` evaluated at `x` (default 0), mod the group order"""
    indices = list(indices)
    if len(set(indices)) != len(indices):
        raise ValueError(f"Duplicate share indices in {indices}")
    numerator = 1
    denominator = 1
    for other in indices:
        if other == index:
            continue
        numerator = (numerator * (x - other)) % GROUP_ORDER
        denominator = (denominator * (index - other)) % GROUP_ORDER
    # Fermat inverse, the group order is prime
    return (numerator * pow(denominator, GROUP_ORDER - 2, GROUP_ORDER)) % GROUP_ORDER


def combine_public_keys(verification_keys: Dict[int, bytes], x: int = 0) -> bytes:
    """
    Interpolate share verification keys in the exponent: Σ λ_i(x)·Y_i.

    At x=0 this is the joint public key; at a member index it is the key that
    member's share must have to lie on the same polynomial.
    """
    indices = list(verification_keys)
    combined = IDENTITY
    for index, key in verification_keys.items():
        combined = point_add(
            combined, scalar_mult(lagrange_coefficient(index, indices, x), key))
    return combined


# ============================================================================
# ELGAMAL
# ============================================================================


@dataclass(frozen=True)
class Ciphertext:
    """Exponential ElGamal ciphertext (r·G, m·G + r·PK)"""
    c1: bytes
    c2: bytes

    @classmethod
    def zero(cls) -> "Ciphertext":
        """Neutral element of homomorphic_add (encryption of 0 with r=0)"""
        return cls(IDENTITY, IDENTITY)

    def to_bytes(self) -> bytes:
        return self.c1 + self.c2

    @classmethod
    def from_bytes(cls, data: BytesLike) -> "Ciphertext":
        if not isinstance(data, (bytes, bytearray)) or len(data) != 2 * POINT_BYTES:
            raise InvalidCiphertext(
                f"Ciphertext must be {2 * POINT_BYTES} bytes")
        ciphertext = cls(bytes(data[:POINT_BYTES]), bytes(data[POINT_BYTES:]))
        ciphertext.validate()
        return ciphertext

    def validate(self):
        if not validate_point(self.c1) or not validate_point(self.c2):
            raise InvalidCiphertext("Ciphertext component is not a valid group element")

    def to_dict(self) -> Dict[str, str]:
        return {"c1": self.c1.hex(), "c2": self.c2.hex()}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "Ciphertext":
        return cls.from_bytes(bytes.fromhex(data["c1"]) + bytes.fromhex(data["c2"]))


@dataclass(frozen=True)
class ElGamalKeypair:
    """Keypair held by the decryption quorum; the core only sees `public`"""
    secret: int
    public: bytes

    def __repr__(self) -> str:
        return f"ElGamalKeypair(public={self.public.hex()})"


def public_key_from_secret(secret: int) -> bytes:
    secret = _as_scalar(secret)
    if secret == 0:
        raise ValueError("Secret key must be non-zero")
    return base_mult(secret)


def generate_keypair() -> ElGamalKeypair:
    secret = random_scalar()
    return ElGamalKeypair(secret=secret, public=base_mult(secret))


def validate_public_key(public_key: BytesLike) -> bytes:
    if not validate_point(public_key) or bytes(public_key) == IDENTITY:
        raise InvalidPublicKey("Public key is not a valid non-identity group element")
    return bytes(public_key)


def encrypt(plaintext: int, public_key: bytes, randomness: Union[int, BytesLike]) -> Ciphertext:
    """
    Encrypt plaintext as (r·G, m·G + r·PK).

    `randomness` must come from a CSPRNG and must never be reused under the
    same key: two ciphertexts sharing r leak the difference of plaintexts.
    """
    if isinstance(plaintext, bool) or not isinstance(plaintext, int):
        raise TypeError("Plaintext must be an int")
    if not 0 <= plaintext < GROUP_ORDER:
        raise ValueError("Plaintext out of range")
    public_key = validate_public_key(public_key)
    r = _as_scalar(randomness)
    if r == 0:
        raise ValueError("Encryption randomness must be non-zero")

    c1 = base_mult(r)
    c2 = point_add(base_mult(plaintext), scalar_mult(r, public_key))
    return Ciphertext(c1, c2)


def discrete_log(point: bytes, max_value: int = DEFAULT_MAX_PLAINTEXT) -> int:
    """Find m in [0, max_value] with m·G == point by stepping through multiples of G"""
    candidate = IDENTITY
    for m in range(max_value + 1):
        if candidate == point:
            return m
        candidate = point_add(candidate, GENERATOR)
    raise DecryptionFailed(f"Plaintext not found in range [0, {max_value}]")


def decrypt(secret: int, ciphertext: Ciphertext, max_value: int = DEFAULT_MAX_PLAINTEXT) -> int:
    """Recover m·G = c2 - x·c1 and solve the small discrete log"""
    ciphertext.validate()
    message_point = point_sub(ciphertext.c2, scalar_mult(_as_scalar(secret), ciphertext.c1))
    return discrete_log(message_point, max_value)


def homomorphic_add(a: Ciphertext, b: Ciphertext) -> Ciphertext:
    """Pointwise addition; decrypts to the sum of the two plaintexts"""
    return Ciphertext(point_add(a.c1, b.c1), point_add(a.c2, b.c2))


def homomorphic_sum(ciphertexts: Iterable[Ciphertext]) -> Ciphertext:
    total = Ciphertext.zero()
    for ciphertext in ciphertexts:
        total = homomorphic_add(total, ciphertext)
    return total


def scale_ciphertext(ciphertext: Ciphertext, factor: int) -> Ciphertext:
    """Enc(m)·k = Enc(k·m), for weighted votes"""
    if isinstance(factor, bool) or not isinstance(factor, int) or factor < 0:
        raise ValueError("Scale factor must be a non-negative int")
    return Ciphertext(scalar_mult(factor, ciphertext.c1), scalar_mult(factor, ciphertext.c2))


# ============================================================================
# NULLIFIERS AND COMMITMENTS
# ============================================================================


def keccak256(*parts: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    for part in parts:
        digest.update(part)
    return digest.digest()


def derive_nullifier(voter_secret: BytesLike, election_id: BytesLike, nonce: int = 0) -> bytes:
    """
    Nullifier = Keccak256(voter_secret || election_id || nonce_u64_le)

    Deterministic per (voter, election, nonce). The election id provides
    domain separation, so the same secret yields unrelated nullifiers in
    different elections.
    """
    voter_secret = _require_bytes(voter_secret, 32, "voter_secret")
    election_id = _require_bytes(election_id, 32, "election_id")
    if not 0 <= nonce < 2**64:
        raise ValueError("Nonce must fit in an unsigned 64-bit integer")
    return keccak256(voter_secret, election_id, struct.pack("<Q", nonce))


def verify_nullifier(nullifier: bytes, voter_secret: BytesLike,
                     election_id: BytesLike, nonce: int = 0) -> bool:
    return constant_time_equal(
        bytes(nullifier), derive_nullifier(voter_secret, election_id, nonce))


CiphertextLike = Union[Ciphertext, Sequence[Ciphertext], BytesLike]


def ciphertext_bytes(ciphertext: CiphertextLike) -> bytes:
    """Canonical bytes of a ciphertext, an encrypted ballot, or raw bytes"""
    if isinstance(ciphertext, Ciphertext):
        return ciphertext.to_bytes()
    if isinstance(ciphertext, (bytes, bytearray)):
        return bytes(ciphertext)
    return b"".join(item.to_bytes() for item in ciphertext)


def commit(ciphertext: CiphertextLike, blinding: BytesLike) -> bytes:
    """Commitment = Keccak256(ciphertext_bytes || blinding)"""
    blinding = _require_bytes(blinding, 32, "blinding")
    return keccak256(ciphertext_bytes(ciphertext), blinding)


def verify_commitment(commitment: bytes, ciphertext: CiphertextLike, blinding: BytesLike) -> bool:
    return constant_time_equal(bytes(commitment), commit(ciphertext, blinding))


def commit_vote(option_index: int, blinding: BytesLike) -> bytes:
    """Commitment to a plaintext choice: Keccak256(option_u8 || blinding)"""
    if not 0 <= option_index < 256:
        raise ValueError("Option index must fit in one byte")
    blinding = _require_bytes(blinding, 32, "blinding")
    return keccak256(bytes([option_index]), blinding)


def verify_vote_commitment(commitment: bytes, option_index: int, blinding: BytesLike) -> bool:
    return constant_time_equal(bytes(commitment), commit_vote(option_index, blinding))


# ============================================================================
# THRESHOLD DECRYPTION PROOFS
# ============================================================================


@dataclass(frozen=True)
class DecryptionShareProof:
    """Chaum-Pedersen proof that log_G(Y_i) == log_c1(D_i)"""
    challenge: int
    response: int

    def to_dict(self) -> Dict[str, str]:
        return {"challenge": hex(self.challenge), "response": hex(self.response)}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "DecryptionShareProof":
        return cls(int(data["challenge"], 16), int(data["response"], 16))


def _dleq_challenge(verification_key: bytes, c1: bytes, partial: bytes,
                    commit_g: bytes, commit_c1: bytes) -> int:
    digest = hashlib.sha512(
        DLEQ_DOMAIN + GENERATOR + verification_key + c1 + partial + commit_g + commit_c1
    ).digest()
    return int.from_bytes(digest, "little") % GROUP_ORDER


def prove_decryption_share(share: int, c1: bytes) -> Tuple[bytes, DecryptionShareProof]:
    """Compute the partial decryption D_i = s_i·c1 and its DLEQ proof"""
    share = _as_scalar(share)
    partial = scalar_mult(share, c1)
    verification_key = base_mult(share)

    nonce = random_scalar()
    commit_g = base_mult(nonce)
    commit_c1 = scalar_mult(nonce, c1)

    challenge = _dleq_challenge(verification_key, c1, partial, commit_g, commit_c1)
    response = (nonce + challenge * share) % GROUP_ORDER
    return partial, DecryptionShareProof(challenge, response)


def verify_decryption_share(verification_key: bytes, c1: bytes, partial: bytes,
                            proof: DecryptionShareProof) -> bool:
    """Check z·G == A + e·Y_i and z·c1 == B + e·D_i by recomputing A, B"""
    if not (validate_point(verification_key) and validate_point(c1)
            and validate_point(partial)):
        return False
    if not (0 <= proof.challenge < GROUP_ORDER and 0 <= proof.response < GROUP_ORDER):
        return False

    commit_g = point_sub(base_mult(proof.response),
                         scalar_mult(proof.challenge, verification_key))
    commit_c1 = point_sub(scalar_mult(proof.response, c1),
                          scalar_mult(proof.challenge, partial))
    expected = _dleq_challenge(verification_key, c1, partial, commit_g, commit_c1)
    return expected == proof.challenge


def combine_decryption_shares(ciphertext: Ciphertext, partials: Dict[int, bytes]) -> bytes:
    """m·G = c2 - Σ λ_i·D_i over the participating member indices"""
    indices = list(partials)
    combined = IDENTITY
    for index, partial in partials.items():
        combined = point_add(
            combined, scalar_mult(lagrange_coefficient(index, indices), partial))
    return point_sub(ciphertext.c2, combined)


__all__ = [
    'GROUP_ORDER',
    'IDENTITY',
    'GENERATOR',
    'POINT_BYTES',
    'HASH_BYTES',
    'DEFAULT_MAX_PLAINTEXT',
    'Ciphertext',
    'ElGamalKeypair',
    'DecryptionShareProof',
    'validate_point',
    'validate_public_key',
    'point_add',
    'point_sub',
    'point_neg',
    'scalar_mult',
    'base_mult',
    'random_scalar',
    'lagrange_coefficient',
    'combine_public_keys',
    'generate_keypair',
    'public_key_from_secret',
    'encrypt',
    'decrypt',
    'discrete_log',
    'homomorphic_add',
    'homomorphic_sum',
    'scale_ciphertext',
    'keccak256',
    'derive_nullifier',
    'verify_nullifier',
    'ciphertext_bytes',
    'commit',
    'verify_commitment',
    'commit_vote',
    'verify_vote_commitment',
    'prove_decryption_share',
    'verify_decryption_share',
    'combine_decryption_shares',
    'constant_time_equal',
]
