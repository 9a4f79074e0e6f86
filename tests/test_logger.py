import json
import logging

from utils.logger import StructuredFormatter, job_logger


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _capturing_logger(name):
    logger = logging.getLogger(name)
    logger.handlers = []
    logger.propagate = False
    logger.setLevel(logging.INFO)
    handler = ListHandler()
    logger.addHandler(handler)
    return logger, handler


def test_job_logger_tags_text_and_record_fields():
    logger, handler = _capturing_logger("tests.job_logger")

    job_logger(logger, "job-1", "material-9", attempt=2).warning("Attempt %s failed", 2)

    record = handler.records[0]
    assert record.getMessage() == "Attempt 2 failed [job_id=job-1 material_id=material-9 attempt=2]"
    assert (record.job_id, record.material_id, record.attempt) == ("job-1", "material-9", 2)


def test_job_logger_leaves_out_unknown_attempt():
    logger, handler = _capturing_logger("tests.job_logger_no_attempt")

    job_logger(logger, "job-1", "material-9").info("Material processed")

    record = handler.records[0]
    assert record.getMessage() == "Material processed [job_id=job-1 material_id=material-9]"
    assert not hasattr(record, "attempt")


def test_structured_formatter_emits_job_fields_as_json():
    logger, handler = _capturing_logger("tests.structured")
    job_logger(logger, "job-1", "material-9", attempt=1).error("Material processing failed")

    payload = json.loads(StructuredFormatter().format(handler.records[0]))

    assert payload["level"] == "ERROR"
    assert payload["job_id"] == "job-1"
    assert payload["material_id"] == "material-9"
    assert payload["message"].startswith("Material processing failed")


def test_structured_formatter_merges_dict_messages():
    record = logging.LogRecord("tests", logging.INFO, __file__, 1, {"message": "ready", "workers": 2}, None, None)

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "ready"
    assert payload["workers"] == 2
