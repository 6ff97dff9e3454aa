"""
Session variants - the nine pacman/ghost speed combinations

Permutation ids are assigned pacman-major:
    0: slow/slow   1: slow/normal   2: slow/fast
    3: normal/slow ...              8: fast/fast
"""

from typing import Dict, List

SPEED_LEVELS = ('slow', 'normal', 'fast')

SPEED_MULTIPLIERS = {
    'pacman': {
        'slow': 0.3,    # 30% of normal speed
        'normal': 1.0,
        'fast': 2.5,    # 250% of normal speed
    },
    'ghost': {
        'slow': 0.2,
        'normal': 1.0,
        'fast': 3.0,
    },
}


def generate_permutations() -> List[Dict]:
    permutations = []
    for pacman in SPEED_LEVELS:
        for ghost in SPEED_LEVELS:
            permutations.append({
                'id': len(permutations),
                'pacman': pacman,
                'ghost': ghost,
            })
    return permutations


PERMUTATIONS = generate_permutations()


def speed_multipliers(config: Dict) -> Dict[str, float]:
    """Resolve a speed config to numeric multipliers"""
    return {
        'pacman': SPEED_MULTIPLIERS['pacman'][config['pacman']],
        'ghost': SPEED_MULTIPLIERS['ghost'][config['ghost']],
    }


def permutation_name(permutation_id: int) -> str:
    config = PERMUTATIONS[permutation_id]
    return f"{config['pacman']}/{config['ghost']}"
