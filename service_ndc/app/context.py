"""
Per-call context: identifiers, timing, deadline and cancellation.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ndc_shared.cancellation import CancellationToken
from ndc_shared.logging import set_call_context


@dataclass
class CallContext:
    """State carried by one outward gateway call."""

    operation: str
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.monotonic)
    started_wall: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = 0
    deadline: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None
    idempotency_key: Optional[str] = None
    credential_hash: Optional[str] = None

    @classmethod
    def start(cls,
              operation: str,
              correlation_id: Optional[str] = None,
              timeout: Optional[float] = None,
              cancel_token: Optional[CancellationToken] = None,
              idempotency_key: Optional[str] = None) -> "CallContext":
        """New context; ``timeout`` bounds the whole call including retries."""
        ctx = cls(operation=operation, cancel_token=cancel_token, idempotency_key=idempotency_key)
        if correlation_id:
            ctx.correlation_id = correlation_id
        if timeout is not None:
            ctx.deadline = ctx.started_at + timeout
        return ctx

    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 3)

    def bind_logging(self) -> None:
        set_call_context(self.correlation_id, self.transaction_id, self.operation)
