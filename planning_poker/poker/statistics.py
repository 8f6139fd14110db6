"""Vote statistics for a revealed round."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from .models import Vote, VoteStatistics, VoteValue


def compute_statistics(votes: Iterable[Vote], total_eligible: int) -> VoteStatistics:
    """Summarise submitted votes.

    - ``mean`` is the arithmetic mean of numeric cards only; ``None`` when no
      numeric card was played.
    - ``consensus`` needs at least one numeric card, every numeric card equal,
      and no PAUSE card mixed in.
    - ``distribution`` counts every submitted card, PAUSE included, keyed by
      the card's wire value.
    """
    values = [v.value for v in votes]
    numeric = [v.numeric for v in values if v.numeric is not None]
    pause_count = sum(1 for v in values if v is VoteValue.PAUSE)

    mean = sum(numeric) / len(numeric) if numeric else None
    consensus = bool(numeric) and len(set(numeric)) == 1 and pause_count == 0

    counts = Counter(v.value for v in values)
    # Keep deck order so clients can render the histogram directly.
    distribution = {card.value: counts[card.value] for card in VoteValue if counts[card.value]}

    return VoteStatistics(
        mean=mean,
        distribution=distribution,
        consensus=consensus,
        pause_count=pause_count,
        total_votes=len(values),
        total_eligible=total_eligible,
    )
