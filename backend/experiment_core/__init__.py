"""
Experiment Core - session lifecycle, validation and backup/recovery

Modules:
- infra: clock, event bus, scheduler, durable store
- experiment: shared state, speed permutations, host bookkeeping
- session: lifecycle tracker and deterministic ordering
- validation: phase gating and consistency rules
- backup: snapshots, storage health, eviction, restore
- coordinator: composition root
"""
from .config import BackupConfig, ExperimentConfig, TrackerConfig, TOTAL_SESSIONS
from .coordinator import ExperimentCoordinator

__all__ = [
    'ExperimentCoordinator', 'ExperimentConfig', 'TrackerConfig', 'BackupConfig', 'TOTAL_SESSIONS',
]
