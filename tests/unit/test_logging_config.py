import json
import logging
import sys

from recordhub.logging_config import JsonFormatter


class TestJsonFormatter:

    def test_one_object_per_record(self):
        record = logging.LogRecord(
            name="recordhub.pipelines.batch",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Processed batch %d/%d",
            args=(1, 3),
            exc_info=None,
        )

        payload = json.loads(JsonFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "recordhub.pipelines.batch"
        assert payload["message"] == "Processed batch 1/3"
        assert "pid" in payload and "timestamp" in payload

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()

        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, exc_info)

        payload = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in payload["exc_info"]
