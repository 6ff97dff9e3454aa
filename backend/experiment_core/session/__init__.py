"""
Session Lifecycle - session tracking, milestones and per-participant ordering
"""
from .randomization import assign_order, distribution_summary, seed_from_user_id, seeded_random
from .tracker import Milestone, MilestoneType, SessionLifecycleTracker, SessionRecord

__all__ = [
    'SessionLifecycleTracker', 'SessionRecord', 'Milestone', 'MilestoneType',
    'assign_order', 'distribution_summary', 'seed_from_user_id', 'seeded_random',
]
