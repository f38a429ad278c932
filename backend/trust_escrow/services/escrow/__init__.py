"""
Escrow Services

EscrowService drives the lifecycle; EscrowStateMachine owns the allowed
transitions; DisputeResolver validates proof and applies dispute outcomes.
"""
from .state_machine import EscrowStateMachine, STATE_CONFIG
from .dispute_resolver import DisputeResolver, ProofValidation, ProofCheck, haversine_distance
from .escrow_service import EscrowService

__all__ = [
    'EscrowStateMachine',
    'STATE_CONFIG',
    'DisputeResolver',
    'ProofValidation',
    'ProofCheck',
    'haversine_distance',
    'EscrowService',
]
