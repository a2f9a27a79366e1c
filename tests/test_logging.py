import json
import logging

from lunchbox.utils.context import request_id_scope
from lunchbox.utils.logging import CustomizeLogger, custom_logger, get_logger


class TestLoggingConfig:
    def test_missing_file_gives_empty_config(self, tmp_path):
        assert CustomizeLogger.load_logging_config(tmp_path / "absent.json", "logger") == {}

    def test_environment_section_is_selected(self, tmp_path):
        path = tmp_path / "logging_config.json"
        path.write_text(
            json.dumps({"logger": {"level": "debug"}, "production": {"level": "info"}})
        )

        assert CustomizeLogger.load_logging_config(path, "production") == {"level": "info"}

    def test_unknown_environment_falls_back_to_logger(self, tmp_path):
        path = tmp_path / "logging_config.json"
        path.write_text(json.dumps({"logger": {"level": "debug"}}))

        assert CustomizeLogger.load_logging_config(path, "staging") == {"level": "debug"}


class TestRequestIdBinding:
    def test_records_carry_the_bound_request_id(self):
        records = []
        sink_id = custom_logger.add(lambda message: records.append(message.record))
        try:
            with request_id_scope("scheduler-1234"):
                get_logger().info("inside")
            get_logger().info("outside")
        finally:
            custom_logger.remove(sink_id)

        assert [r["extra"]["request_id"] for r in records] == ["scheduler-1234", "app"]

    def test_stdlib_records_are_intercepted(self):
        records = []
        sink_id = custom_logger.add(lambda message: records.append(message.record))
        try:
            with request_id_scope("req-1"):
                logging.getLogger("celery").warning("from celery")
        finally:
            custom_logger.remove(sink_id)

        assert any(
            r["message"] == "from celery" and r["extra"]["request_id"] == "req-1"
            for r in records
        )
