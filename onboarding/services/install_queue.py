"""
Install Queue Preparation
=========================

Turns the recommendation source's candidates into a session's frozen
install queue.

Only ``immediate`` and ``high`` priority units are auto-installed; the rest
are returned separately so the caller can surface them as suggestions.

Ordering: priority rank descending (immediate=4 ... low=1), then confidence
descending.  Python's sort is stable, so remaining ties keep their original
input order.
"""

import logging
from typing import Iterable, List, Tuple

from onboarding.services.models import PriorityLabel, Recommendation

logger = logging.getLogger(__name__)

AUTO_INSTALL_PRIORITIES = frozenset({PriorityLabel.IMMEDIATE, PriorityLabel.HIGH})


def _sort_key(rec: Recommendation) -> Tuple[int, float]:
    return (-rec.priority.rank, -rec.confidence_score)


def prepare_install_queue(
    recommendations: Iterable[Recommendation],
    intelligent_ordering: bool = True,
) -> Tuple[Tuple[Recommendation, ...], Tuple[Recommendation, ...]]:
    """
    Filter and order recommendations for auto-installation.

    Args:
        recommendations: Candidates from the recommendation source, in source order
        intelligent_ordering: When False, keep source order (filter still applies)

    Returns:
        (queue, dropped): the frozen install queue and the recommendations
        that were filtered out of the auto-install flow
    """
    candidates: List[Recommendation] = list(recommendations)
    queue: List[Recommendation] = []
    dropped: List[Recommendation] = []
    seen = set()

    for rec in candidates:
        if rec.priority not in AUTO_INSTALL_PRIORITIES:
            dropped.append(rec)
            continue
        if rec.unit.id in seen:
            # Units are keyed by id within a session; keep the first occurrence
            logger.warning("Duplicate recommendation for unit %s ignored", rec.unit.id)
            dropped.append(rec)
            continue
        seen.add(rec.unit.id)
        queue.append(rec)

    if intelligent_ordering:
        queue.sort(key=_sort_key)

    logger.debug(
        "Prepared install queue: %d queued, %d dropped (of %d candidates)",
        len(queue), len(dropped), len(candidates),
    )
    return tuple(queue), tuple(dropped)


def estimate_total_minutes(queue: Iterable[Recommendation]) -> float:
    """Sum of the queue's estimated setup times, in minutes."""
    return float(sum(rec.estimated_setup_time for rec in queue))
