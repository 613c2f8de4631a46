"""
Result collection and export.

The reporter keeps the ordered record stream of a run and derives the
summary from it. CSV export is a separate step driven by the caller.
"""

import csv
import os
import logging
import threading
from typing import List

from anchor_sync.models import OperationResult, OperationStatus, RunSummary

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    'Identifier', 'Domain', 'ObjectClass', 'DistinguishedName', 'Timestamp', 'Status',
    'ErrorMessage', 'SourceAttribute', 'SourceValue', 'TargetAttribute', 'TargetValue'
]


class ResultReporter:
    """
    Collects operation results in the order they are produced.

    Identity lookups are kept in their own sequence. Terminal records (failed
    lookups, report-only entries and write outcomes) form the result stream.
    Lookup failures are produced during enumeration, so for an identity run
    they all precede the write outcomes: Identity [A, B, C] with B missing
    yields [GetFailed B, Succeeded A, Succeeded C]. Within each phase the
    order follows the identifiers or the directory query order.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._lookups: List[OperationResult] = []
        self._results: List[OperationResult] = []

    def record_lookup(self, result: OperationResult):
        with self._lock:
            self._lookups.append(result)
            if result.status == OperationStatus.GET_FAILED:
                self._results.append(result)

    def record(self, result: OperationResult):
        with self._lock:
            self._results.append(result)

    @property
    def lookups(self) -> List[OperationResult]:
        with self._lock:
            return list(self._lookups)

    @property
    def results(self) -> List[OperationResult]:
        with self._lock:
            return list(self._results)

    def summary(self) -> RunSummary:
        """Count write outcomes; lookup failures are not part of the summary."""
        with self._lock:
            succeeded = sum(1 for r in self._results if r.status == OperationStatus.SUCCEEDED)
            failed = sum(1 for r in self._results if r.status == OperationStatus.FAILED)
        return RunSummary(attempted=succeeded + failed, succeeded=succeeded, failed=failed)


def export_csv(results: List[OperationResult], path: str) -> str:
    """
    Write result records to a CSV file.

    Returns:
        Path of the written file
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for result in results:
            writer.writerow(result.to_row())

    logger.info(f"Exported {len(results)} result(s) to {path}")
    return path
