from __future__ import annotations

import logging
from typing import Any


class TurnLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with trace/customer/state context."""

    def process(self, msg: Any, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        trace_id = self.extra.get("trace_id") or "-"
        customer_id = self.extra.get("customer_id") or "-"
        prefix = f"trace_id={trace_id} customer_id={customer_id}"
        state = self.extra.get("state")
        if state:
            prefix = f"{prefix} state={state}"
        return f'{prefix} msg="{msg}"', kwargs

    def with_state(self, state: Any) -> "TurnLoggerAdapter":
        return TurnLoggerAdapter(self.logger, {**self.extra, "state": str(state)})


def get_turn_logger(
    logger: logging.Logger | str,
    *,
    trace_id: str | None,
    customer_id: str | None,
) -> TurnLoggerAdapter:
    base_logger = logging.getLogger(logger) if isinstance(logger, str) else logger
    return TurnLoggerAdapter(
        base_logger,
        {
            "trace_id": trace_id or "-",
            "customer_id": customer_id or "-",
        },
    )
