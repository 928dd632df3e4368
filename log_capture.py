import logging
from collections import deque
from contextlib import ContextDecorator


class _BufferingHandler(logging.Handler):
    def __init__(self, buffer, level=logging.INFO):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record):
        try:
            self.buffer.append(self.format(record))
        except Exception:  # noqa: BLE001
            self.handleError(record)


class JobLogCapture(ContextDecorator):
    """Capture log lines emitted while one job runs.

    On exit the last ``max_lines`` lines are written to the job row through
    ``store.save_run_logs``. A failed write is logged and never replaces the
    job's own exception.
    """

    def __init__(self, store=None, job_id=None, max_lines=200, level=logging.INFO):
        self.store = store
        self.job_id = job_id
        self.lines = deque(maxlen=max_lines)
        self.handler = _BufferingHandler(self.lines, level)
        self.handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))

    def __enter__(self):
        self.lines.clear()
        logging.getLogger().addHandler(self.handler)
        logging.debug("JobLogCapture start for job %s", self.job_id)
        return self

    def __exit__(self, exc_type, exc, tb):
        logging.getLogger().removeHandler(self.handler)
        if exc:
            logging.debug("JobLogCapture caught exception: %s", exc)
        if self.store is not None and self.job_id is not None and self.lines:
            try:
                self.store.save_run_logs(self.job_id, list(self.lines))
            except Exception as save_exc:  # noqa: BLE001
                logging.warning("Failed to store run logs for job %s: %s", self.job_id, save_exc)
        # Do not suppress exceptions
        return False
