"""
Result Aggregator for DataSync Reconciliation

Groups the per-feature comparison rows returned by the remote compare
procedure into (result type, description) summaries and decides whether
an apply needs explicit confirmation.
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from datasync.reconciliation.models import ComparisonRow, ResultSummary, WARNING_RESULT_TYPES

logger = logging.getLogger(__name__)


class ResultAggregator:
    """
    Summarizes comparison rows for review.

    Grouping is by the (type, description) pair, since one type can carry
    several distinct descriptions. Output keeps the order in which each
    pair first appears; rows arrive already sorted from the server.
    """

    def __init__(self):
        """Initialize the result aggregator."""
        logger.debug("Initialized ResultAggregator")

    def aggregate(self, rows: Iterable[ComparisonRow]) -> List[ResultSummary]:
        """
        Group rows into summaries.

        Args:
            rows: Comparison rows in server order

        Returns:
            One summary per distinct (type, description) pair
        """
        counts: Dict[Tuple[str, str], int] = defaultdict(int)

        for row in rows:
            counts[(row.result_type, row.description)] += 1

        summaries = [
            ResultSummary(result_type=result_type, description=description, count=count)
            for (result_type, description), count in counts.items()
        ]

        logger.info(
            f"Aggregated {sum(s.count for s in summaries)} comparison rows "
            f"into {len(summaries)} summaries"
        )
        return summaries

    def has_warning_types(self, summaries: Sequence[ResultSummary]) -> bool:
        """
        Check whether any summary needs confirmation before apply.

        Args:
            summaries: Result summaries

        Returns:
            True if any type is empty, error or orphan (any case)
        """
        return any(s.result_type.lower() in WARNING_RESULT_TYPES for s in summaries)

    def warning_summaries(self, summaries: Sequence[ResultSummary]) -> List[ResultSummary]:
        """Return the summaries whose rows the remote update will skip."""
        return [s for s in summaries if s.is_warning]

    def details_for(
        self,
        rows: Iterable[ComparisonRow],
        result_type: str,
        description: Optional[str] = None
    ) -> List[ComparisonRow]:
        """
        Get the detail rows behind a summary entry.

        Args:
            rows: Comparison rows
            result_type: Result type to select
            description: Optional description to narrow the selection

        Returns:
            Matching rows in their original order
        """
        return [
            row for row in rows
            if row.result_type == result_type
            and (description is None or row.description == description)
        ]

    def breakdown_lines(self, summaries: Sequence[ResultSummary]) -> List[str]:
        """Format summaries as audit log lines."""
        return [f"{s.count} {s.result_type} - {s.description}" for s in summaries]
