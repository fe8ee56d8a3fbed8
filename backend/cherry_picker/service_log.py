"""
Service Log Builder
====================
Turns raw quality records into ServiceLogs and folds relay results back
into raw records. Pure functions, no I/O.
"""

from typing import Optional

from pydantic import ValidationError

from .models import SUCCESS_CODE, QualityRecord, ServiceLog
from .store import QualityStoreError


class MalformedRecordError(QualityStoreError):
    """A stored record could not be decoded."""
    pass


def decode_record(raw: str) -> QualityRecord:
    try:
        return QualityRecord.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedRecordError(f"Undecodable quality record {raw[:80]!r}: {e}") from e


def build_service_log(
    candidate_id: str,
    raw: Optional[str],
    precision: int = 5,
    success_code: int = SUCCESS_CODE,
) -> ServiceLog:
    """
    Build the ServiceLog for one candidate.

    No record this hour → success_rate 1 so the candidate lands in the top
    tier and gets tested. A record without any success_code → rate 0, latency 0.
    """
    if raw is None:
        return ServiceLog(id=candidate_id, attempts=0, success_rate=1.0)

    record = decode_record(raw)
    attempts = record.attempts
    success_rate = 0.0
    average_success_latency = 0.0

    successes = record.success_count(success_code)
    if successes > 0:
        success_rate = successes / attempts
        average_success_latency = round(record.average_success_latency, precision)

    return ServiceLog(
        id=candidate_id,
        attempts=attempts,
        success_rate=success_rate,
        average_success_latency=average_success_latency,
    )


def apply_result(
    raw: Optional[str],
    elapsed_time: float,
    result: int,
    precision: int = 5,
    success_code: int = SUCCESS_CODE,
) -> QualityRecord:
    """
    Fold one relay result into a record.

    The running mean divides by ALL attempts, failures included, so failures
    drag the success latency down as if they were instant successes.
    """
    if raw is None:
        return QualityRecord(
            results={result: 1},
            average_success_latency=elapsed_time if result == success_code else 0.0,
        )

    record = decode_record(raw)
    results = dict(record.results)
    results[result] = results.get(result, 0) + 1
    total_results = sum(results.values())

    average = record.average_success_latency
    if result == success_code:
        average = round(
            ((total_results - 1) * average + elapsed_time) / total_results,
            precision,
        )

    return QualityRecord(results=results, average_success_latency=average)
