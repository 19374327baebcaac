"""
Process-local record of provider exchanges, per transaction.

Each gateway call gets one record keyed by its transaction id, holding the
masked request document and every provider answer received while serving
it. Records are grouped by correlation id with a per-correlation sequence
number, and the oldest record is evicted once ``max_entries`` is reached.
"""

import re
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Pattern, Tuple

from ndc_shared.logging import get_logger
from service_ndc.app.context import CallContext
from service_ndc.app.models import ApiResult


# (pattern, replacement); XML elements first, then JSON string/number members
SENSITIVE_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"<(CardNumber|Number)>(\d{4})\d+(\d{4})</\1>"), r"<\1>\2********\3</\1>"),
    (re.compile(r"<(CVV|SeriesCode)>\d+</\1>"), r"<\1>***</\1>"),
    (re.compile(r"<Password>[^<]+</Password>"), "<Password>[REDACTED]</Password>"),
    (re.compile(r'("(?:cardNumber|card_number|number)"\s*:\s*"?)(\d{4})\d+(\d{4})'), r"\1\2********\3"),
    (re.compile(r'("(?:cvv|seriesCode|series_code)"\s*:\s*"?)\d+'), r"\1***"),
    (re.compile(r'("password"\s*:\s*")[^"]*'), r"\1[REDACTED]"),
]


def mask_sensitive(text: Optional[str]) -> Optional[str]:
    """Mask card numbers, security codes and passwords in a provider document."""
    if not text:
        return text
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


@dataclass
class ProviderExchange:
    attempt: int
    status_code: Optional[int]
    response: Optional[str]
    error_code: Optional[str] = None
    duration_ms: Optional[float] = None


@dataclass
class TransactionRecord:
    transaction_id: str
    correlation_id: str
    operation: str
    sequence: int
    timestamp: str
    request: Optional[str] = None
    exchanges: List[ProviderExchange] = field(default_factory=list)
    success: Optional[bool] = None
    duration_ms: Optional[float] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransactionLog:
    """Bounded in-memory store of transaction records."""

    def __init__(self, max_entries: int = 1000, mask: bool = True):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.mask = mask
        self.logger = get_logger("ndc.transactions")
        self._records: "OrderedDict[str, TransactionRecord]" = OrderedDict()
        self._sequences: Dict[str, int] = {}
        self._per_correlation: Dict[str, int] = {}

    def _masked(self, text: Optional[str]) -> Optional[str]:
        return mask_sensitive(text) if self.mask else text

    def _record_for(self, context: CallContext) -> TransactionRecord:
        record = self._records.get(context.transaction_id)
        if record is not None:
            return record

        sequence = self._sequences.get(context.correlation_id, 0) + 1
        self._sequences[context.correlation_id] = sequence
        self._per_correlation[context.correlation_id] = self._per_correlation.get(context.correlation_id, 0) + 1

        record = TransactionRecord(
            transaction_id=context.transaction_id,
            correlation_id=context.correlation_id,
            operation=context.operation,
            sequence=sequence,
            timestamp=datetime.now(timezone.utc).isoformat()
        )
        self._records[context.transaction_id] = record
        while len(self._records) > self.max_entries:
            self._evict_oldest()
        return record

    def _evict_oldest(self) -> None:
        _, evicted = self._records.popitem(last=False)
        remaining = self._per_correlation.get(evicted.correlation_id, 1) - 1
        if remaining > 0:
            self._per_correlation[evicted.correlation_id] = remaining
        else:
            self._per_correlation.pop(evicted.correlation_id, None)
            self._sequences.pop(evicted.correlation_id, None)

    def start(self, context: CallContext, request: str) -> None:
        """Open the record for a call with the document about to be sent."""
        self._record_for(context).request = self._masked(request)

    def record_exchange(self,
                        context: CallContext,
                        status_code: Optional[int],
                        response: Optional[str],
                        error_code: Optional[str] = None,
                        duration_ms: Optional[float] = None) -> None:
        self._record_for(context).exchanges.append(ProviderExchange(
            attempt=context.attempt,
            status_code=status_code,
            response=self._masked(response),
            error_code=error_code,
            duration_ms=duration_ms
        ))

    def complete(self, context: CallContext, result: ApiResult) -> None:
        record = self._record_for(context)
        record.success = result.success
        record.duration_ms = result.meta.duration
        if result.error is not None:
            record.error_code = result.error.code
            record.error_message = result.error.message
        self.logger.debug(
            "Transaction recorded",
            sequence=record.sequence,
            exchanges=len(record.exchanges),
            success=record.success
        )

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        return self._records.get(transaction_id)

    def by_correlation(self, correlation_id: str) -> List[TransactionRecord]:
        """Records sharing a correlation id, in call order."""
        records = [r for r in self._records.values() if r.correlation_id == correlation_id]
        return sorted(records, key=lambda r: r.sequence)

    def recent(self,
               limit: int = 50,
               operation: Optional[str] = None,
               success: Optional[bool] = None) -> List[TransactionRecord]:
        records = [
            r for r in reversed(self._records.values())
            if (operation is None or r.operation == operation)
            and (success is None or r.success == success)
        ]
        return records[:limit]

    def get_stats(self) -> Dict[str, Any]:
        completed = [r for r in self._records.values() if r.success is not None]
        by_operation: Dict[str, int] = {}
        for record in self._records.values():
            by_operation[record.operation] = by_operation.get(record.operation, 0) + 1
        succeeded = sum(1 for r in completed if r.success)
        return {
            "total": len(self._records),
            "by_operation": by_operation,
            "success_rate": round(succeeded / len(completed) * 100, 2) if completed else 0.0,
            "correlations": len(self._per_correlation),
        }

    def clear(self) -> None:
        self._records.clear()
        self._sequences.clear()
        self._per_correlation.clear()
        self.logger.info("Transaction log cleared")
