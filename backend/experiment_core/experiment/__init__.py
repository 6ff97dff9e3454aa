"""
Experiment - shared state context, speed permutations and host bookkeeping
"""
from .permutations import PERMUTATIONS, SPEED_MULTIPLIERS, permutation_name, speed_multipliers
from .state import ExperimentManager, ExperimentState

__all__ = [
    'ExperimentState', 'ExperimentManager',
    'PERMUTATIONS', 'SPEED_MULTIPLIERS', 'permutation_name', 'speed_multipliers',
]
