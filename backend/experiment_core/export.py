"""
Data Export - CSV and statistical summaries of completed sessions

CSV Format (two sections, separated by a blank line):
# Session Summary
session_id,user_id,permutation_id,pacman_speed,ghost_speed,total_ghosts_eaten,...
1,alice,4,normal,normal,3,120,1,5,7,0.7142857142857143,95000

# Raw Events
session_id,event_type,timestamp,time,pacman_speed,ghost_speed
1,ghostEaten,1767261601520,1520,normal,normal
...

Usage:
    csv_text = metrics_to_csv(state.metrics)
    summary = statistical_summary(state.metrics)
"""

import csv
import io
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

from .experiment.permutations import SPEED_LEVELS

logger = logging.getLogger(__name__)

SESSION_COLUMNS = [
    'session_id', 'user_id', 'permutation_id', 'pacman_speed', 'ghost_speed',
    'total_ghosts_eaten', 'total_pellets_eaten', 'total_deaths',
    'successful_turns', 'total_turns', 'turn_accuracy', 'game_time',
]

EVENT_COLUMNS = ['session_id', 'event_type', 'timestamp', 'time', 'pacman_speed', 'ghost_speed']

PERFORMANCE_METRICS = [
    'total_ghosts_eaten', 'total_pellets_eaten', 'total_deaths', 'successful_turns', 'total_turns',
]


def turn_accuracy(summary: Dict) -> float:
    total = summary.get('total_turns') or 0
    return summary.get('successful_turns', 0) / total if total > 0 else 0.0


def extract_events(metrics: Sequence[Dict]) -> List[Dict]:
    """All events across sessions, tagged with their session, by timestamp"""
    events = []
    for session in metrics:
        for event in session.get('events') or []:
            events.append({
                **event,
                'session_id': session.get('session_id'),
                'speed_config': session.get('speed_config') or {},
            })
    return sorted(events, key=lambda e: e.get('timestamp') or 0)


def metrics_to_csv(metrics: Sequence[Dict]) -> str:
    """Render session summaries and raw events as sectioned CSV text"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')

    if metrics:
        buffer.write('# Session Summary\n')
        writer.writerow(SESSION_COLUMNS)
        for session in metrics:
            summary = session.get('summary') or {}
            speed = session.get('speed_config') or {}
            writer.writerow([
                session.get('session_id'),
                session.get('user_id'),
                session.get('permutation_id'),
                speed.get('pacman', ''),
                speed.get('ghost', ''),
                *(summary.get(name, 0) for name in PERFORMANCE_METRICS),
                turn_accuracy(summary),
                summary.get('game_time', 0),
            ])
        buffer.write('\n')

    events = extract_events(metrics)
    if events:
        buffer.write('# Raw Events\n')
        writer.writerow(EVENT_COLUMNS)
        for event in events:
            writer.writerow([
                event['session_id'],
                event.get('type'),
                event.get('timestamp'),
                event.get('time'),
                event['speed_config'].get('pacman', ''),
                event['speed_config'].get('ghost', ''),
            ])

    return buffer.getvalue()


def describe(values: Sequence[float]) -> Dict:
    """mean / median / std / min / max / count of a non-empty sample"""
    array = np.asarray(values, dtype=float)
    return {
        'mean': float(np.mean(array)),
        'median': float(np.median(array)),
        'std': float(np.std(array)),
        'min': float(np.min(array)),
        'max': float(np.max(array)),
        'count': int(array.size),
    }


def statistical_summary(metrics: Sequence[Dict]) -> Optional[Dict]:
    """
    Descriptive statistics over completed sessions.

    Returns:
        Dict with sessions / performance / speed_analysis / turn_analysis /
        time_analysis sections, or None when there are no sessions
    """
    if not metrics:
        return None

    summaries = [s.get('summary') or {} for s in metrics]

    performance = {}
    for name in PERFORMANCE_METRICS:
        values = [summary[name] for summary in summaries if name in summary]
        if values:
            performance[name] = describe(values)

    accuracies = [turn_accuracy(summary) for summary in summaries if (summary.get('total_turns') or 0) > 0]
    if accuracies:
        performance['turn_accuracy'] = describe(accuracies)

    return {
        'sessions': {
            'total': len(metrics),
            'completed': sum(1 for s in metrics if s.get('summary')),
        },
        'performance': performance,
        'speed_analysis': _speed_effects(metrics),
        'turn_analysis': _turn_performance(metrics),
        'time_analysis': _time_metrics(summaries),
    }


def _speed_effects(metrics: Sequence[Dict]) -> Dict:
    analysis = {}
    for entity in ('pacman', 'ghost'):
        analysis[entity] = {}
        for speed in SPEED_LEVELS:
            group = [
                s['summary'] for s in metrics
                if s.get('summary') and (s.get('speed_config') or {}).get(entity) == speed
            ]
            if not group:
                continue
            analysis[entity][speed] = {
                'session_count': len(group),
                'avg_ghosts_eaten': float(np.mean([g.get('total_ghosts_eaten', 0) for g in group])),
                'avg_pellets_eaten': float(np.mean([g.get('total_pellets_eaten', 0) for g in group])),
                'avg_deaths': float(np.mean([g.get('total_deaths', 0) for g in group])),
                'avg_turn_accuracy': float(np.mean([turn_accuracy(g) for g in group])),
            }
    return analysis


def _turn_performance(metrics: Sequence[Dict]) -> Optional[Dict]:
    turns = [e for e in extract_events(metrics) if e.get('type') == 'turnComplete']
    if not turns:
        return None

    successful = [e for e in turns if e.get('success')]
    failed = [e for e in turns if not e.get('success')]

    return {
        'total_turns': len(turns),
        'successful_turns': len(successful),
        'failed_turns': len(failed),
        'success_rate': len(successful) / len(turns),
        'avg_duration': {
            'successful': float(np.mean([e.get('duration') or 0 for e in successful])) if successful else 0.0,
            'failed': float(np.mean([e.get('duration') or 0 for e in failed])) if failed else 0.0,
        },
    }


def _time_metrics(summaries: Sequence[Dict]) -> Optional[Dict]:
    game_times = [s['game_time'] for s in summaries if s.get('game_time')]
    if not game_times:
        return None

    return {
        'total_play_time': int(np.sum(game_times)),
        'avg_session_duration': float(np.mean(game_times)),
        'median_session_duration': float(np.median(game_times)),
        'shortest_session': int(np.min(game_times)),
        'longest_session': int(np.max(game_times)),
    }
