import json
import logging

from gifter_jobs.utils.logger import ConsoleFormatter, JSONFormatter, get_logger


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def _capturing(name: str):
    log = get_logger(name)
    handler = _Capture()
    log.logger.addHandler(handler)
    log.logger.setLevel(logging.DEBUG)
    return log, handler


def test_get_logger_prefixes_service_tree():
    assert get_logger("audit").logger.name == "gifter_jobs.audit"
    assert get_logger("gifter_jobs.jobs.worker").logger.name == "gifter_jobs.jobs.worker"


def test_bound_context_is_merged_and_none_dropped():
    log, handler = _capturing("tests.bound")
    try:
        job_log = log.bind(queue="product-embedding", job_id="j-1")
        job_log.info("Job skipped", skip_reason="embedding-unchanged", attempt=None)
        log.info("Unbound")
    finally:
        log.logger.removeHandler(handler)

    first, second = handler.records
    assert first.fields == {"queue": "product-embedding", "job_id": "j-1", "skip_reason": "embedding-unchanged"}
    assert second.fields == {}
    assert log.context == {}


def test_formatters_render_fields():
    record = logging.LogRecord("gifter_jobs.tests", logging.INFO, __file__, 10, "Job completed", None, None)
    record.fields = {"queue": "reminder-dispatch", "job_id": "j-2"}

    payload = json.loads(JSONFormatter().format(record))
    assert payload["message"] == "Job completed"
    assert payload["service"] == "gifter-jobs"
    assert payload["queue"] == "reminder-dispatch"
    assert payload["timestamp"].endswith("Z")

    line = ConsoleFormatter(fmt="%(levelname)s %(message)s").format(record)
    assert line == "INFO Job completed | queue=reminder-dispatch job_id=j-2"
