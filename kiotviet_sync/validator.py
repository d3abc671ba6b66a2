"""Post-fetch consistency checks. Findings are logged and reported, never raised."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, Iterable, Optional

import structlog

from kiotviet_sync.models import EntityKind, IntegrityReport, extract_external_id

logger = structlog.get_logger(__name__)


def validate_fetch(
    records: Iterable[Dict[str, Any]],
    entity: EntityKind,
    reported_total: Optional[int],
    filtered: bool = False,
) -> IntegrityReport:
    """
    Check a fetched record set for repeated ids and count anomalies.

    Category-filtered fetches legitimately return fewer records than the sum
    of per-category totals, so only an excess is a mismatch there.
    """
    records = list(records)
    counts: Counter = Counter()
    missing = 0
    for record in records:
        external_id = extract_external_id(record, entity)
        if external_id is None:
            missing += 1
        else:
            counts[external_id] += 1

    duplicate_ids = sorted(eid for eid, n in counts.items() if n > 1)
    unique_count = len(counts) + missing

    if reported_total is None:
        count_mismatch = False
    elif filtered:
        count_mismatch = unique_count > reported_total
    else:
        count_mismatch = unique_count != reported_total

    report = IntegrityReport(
        fetched_count=len(records),
        unique_count=unique_count,
        reported_total=reported_total,
        duplicate_ids=duplicate_ids,
        missing_id_count=missing,
        count_mismatch=count_mismatch,
        filtered=filtered,
    )

    if duplicate_ids:
        logger.warning(
            "duplicate_external_ids",
            entity=entity.label,
            count=len(duplicate_ids),
            sample=duplicate_ids[:10],
        )
    if missing:
        logger.warning("records_without_id", entity=entity.label, count=missing)
    if count_mismatch:
        logger.warning(
            "fetched_count_mismatch",
            entity=entity.label,
            unique=unique_count,
            reported_total=reported_total,
            filtered=filtered,
        )
    elif filtered and reported_total is not None and unique_count < reported_total:
        logger.info(
            "filtered_fetch_smaller_than_total",
            entity=entity.label,
            unique=unique_count,
            reported_total=reported_total,
        )
    return report
