"""Tests for the loguru → Redis stream sink."""
import pytest
from loguru import logger

from infrastructure.log import redis_stream_sink
from memory.stream_logger import StreamLogger


@pytest.fixture
def stream_log(redis_client):
    return StreamLogger(client=redis_client, debug=True)


@pytest.fixture
def sink_for(stream_log):
    handler_ids = []

    def install(level="WARNING"):
        handler_ids.append(logger.add(redis_stream_sink("worker", stream_log), level=level))
    yield install
    for handler_id in handler_ids:
        logger.remove(handler_id)


class TestRedisStreamSink:

    def test_levels_mapped_and_filtered(self, sink_for, stream_log):
        sink_for("WARNING")
        logger.info("not mirrored")
        logger.warning("disk at {}%", 91)
        logger.critical("out of disk")
        entries = stream_log.get_logs("worker")
        assert [(e["level"], e["message"]) for e in entries] == [("ERROR", "out of disk"), ("WARN", "disk at 91%")]

    def test_caller_details_recorded(self, sink_for, stream_log):
        sink_for("DEBUG")
        logger.debug("tick")
        details = stream_log.get_logs("worker")[0]["details"]
        assert details["function"] == "test_caller_details_recorded"
        assert isinstance(details["line"], int)

    def test_exception_included(self, sink_for, stream_log):
        sink_for("ERROR")
        try:
            raise KeyError("missing")
        except KeyError:
            logger.exception("lookup failed")
        details = stream_log.get_logs("worker")[0]["details"]
        assert "KeyError" in details["exception"]
