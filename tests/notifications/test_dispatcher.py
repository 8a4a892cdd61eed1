import logging

from src.flow_billing.flow_billing.notifications.dispatcher import (
    INVOICE_SENT,
    LoggingNotificationDispatcher,
    notify_safely,
)


def test_dispatch_reaches_every_handler():
    seen = []
    dispatcher = LoggingNotificationDispatcher()
    dispatcher.register_handler(lambda event, payload: seen.append(("a", event, payload["invoice_id"])))
    dispatcher.register_handler(lambda event, payload: seen.append(("b", event, payload["invoice_id"])))

    assert notify_safely(dispatcher, INVOICE_SENT, {"invoice_id": 5})
    assert seen == [("a", INVOICE_SENT, 5), ("b", INVOICE_SENT, 5)]


def test_failures_are_logged_not_raised(caplog):
    def broken(event, payload):
        raise RuntimeError("smtp down")

    dispatcher = LoggingNotificationDispatcher()
    dispatcher.register_handler(broken)

    with caplog.at_level(logging.ERROR):
        assert notify_safely(dispatcher, INVOICE_SENT, {"invoice_id": 5}) is False

    assert "Notification invoice.sent failed" in caplog.text
