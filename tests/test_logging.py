from __future__ import annotations

import logging

from orderbot.services.session_manager import SessionState
from orderbot.utils.logging import get_turn_logger

LOGGER_NAME = "orderbot.tests.turn"


def test_turn_logger_prefixes_trace_and_customer(caplog):
    log = get_turn_logger(LOGGER_NAME, trace_id="abc123", customer_id="549111@c.us")

    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        log.info("turn started")

    [record] = caplog.records
    assert record.getMessage() == 'trace_id=abc123 customer_id=549111@c.us msg="turn started"'


def test_turn_logger_adds_session_state(caplog):
    log = get_turn_logger(logging.getLogger(LOGGER_NAME), trace_id=None, customer_id="549111@c.us")
    stateful = log.with_state(SessionState.CART_OPEN)

    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        stateful.info("intent=%s", "SHOW_CART")
        log.info("plain")

    first, second = (record.getMessage() for record in caplog.records)
    assert first == 'trace_id=- customer_id=549111@c.us state=CART_OPEN msg="intent=SHOW_CART"'
    assert second == 'trace_id=- customer_id=549111@c.us msg="plain"'
