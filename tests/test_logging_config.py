import json
import logging

from adminbot.logging_config import JSONFormatter, conversation_logger, get_logger
from adminbot.services.conversation_key import ConversationKey


def test_json_formatter_includes_context():
    record = logging.makeLogRecord(
        {"name": "adminbot.test", "levelname": "INFO", "msg": "Turn completed", "context": {"elapsed_ms": 12}}
    )

    entry = json.loads(JSONFormatter().format(record))

    assert entry["logger"] == "adminbot.test"
    assert entry["message"] == "Turn completed"
    assert entry["context"] == {"elapsed_ms": 12}


def test_conversation_logger_merges_fields(caplog):
    log = conversation_logger(get_logger("test"), ConversationKey("salon-1", "79001234567"))

    with caplog.at_level(logging.INFO, logger="adminbot.test"):
        log.info("hello", extra={"context": {"stage": "llm"}})

    assert caplog.records[0].context == {"tenant_id": "salon-1", "subscriber_id": "79001234567", "stage": "llm"}
