"""Tests for the in-memory log ring buffer."""

import logging

import pytest

from branchoff.log_buffer import LogBuffer, RingBufferHandler


@pytest.fixture
def captured():
    buf = LogBuffer(maxlen=50)
    handler = RingBufferHandler(buf)
    log = logging.getLogger("branchoff.test_log_buffer")
    log.setLevel(logging.DEBUG)
    log.addHandler(handler)
    yield buf, log
    log.removeHandler(handler)


class TestRingBufferHandler:
    def test_records_are_captured(self, captured):
        buf, log = captured
        log.info("Started %s", "create#provision")

        (entry,) = buf.query()
        assert entry["level"] == "INFO"
        assert entry["name"] == "branchoff.test_log_buffer"
        assert entry["message"] == "Started create#provision"
        assert "error" not in entry

    def test_exception_is_recorded(self, captured):
        buf, log = captured
        try:
            raise RuntimeError("port busy")
        except RuntimeError:
            log.exception("Step failed")

        assert "port busy" in buf.query()[0]["error"]


class TestLogBuffer:
    def test_bounded(self):
        buf = LogBuffer(maxlen=3)
        for i in range(5):
            buf.push({"level": "INFO", "name": "x", "message": str(i)})
        assert buf.size == 3
        assert buf.maxlen == 3
        assert [e["message"] for e in buf.query()] == ["4", "3", "2"]

    def test_level_is_a_minimum(self):
        buf = LogBuffer()
        for level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            buf.push({"level": level, "name": "x", "message": level})
        assert [e["message"] for e in buf.query(level="warning")] == ["ERROR", "WARNING"]

    def test_name_prefix_and_limit(self):
        buf = LogBuffer()
        buf.push({"level": "INFO", "name": "branchoff.pipelines", "message": "p1"})
        buf.push({"level": "INFO", "name": "uvicorn.access", "message": "u"})
        buf.push({"level": "INFO", "name": "branchoff.deferred", "message": "d"})
        assert [e["message"] for e in buf.query(name="branchoff")] == ["d", "p1"]
        assert [e["message"] for e in buf.query(name="branchoff", limit=1)] == ["d"]
