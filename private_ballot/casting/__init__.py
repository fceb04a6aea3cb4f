"""
Vote casting: ballot preparation and the one-vote-per-nullifier protocol
"""

from .vote_casting import (
    PreparedBallot,
    VoteCastingProtocol,
    encrypt_choice,
    prepare_ballot,
)

__all__ = [
    'PreparedBallot',
    'VoteCastingProtocol',
    'encrypt_choice',
    'prepare_ballot',
]
