import logging

from .models import utcnow
from .store import ScanStore

logger = logging.getLogger(__name__)


class ScanLogger:
    """
    Logs scan events to the scan store.
    This allows the API to read real-time progress from a background worker.
    """

    def __init__(self, scan_id: str, store: ScanStore):
        self.scan_id = scan_id
        self.store = store

    def log(self, level: str, message: str) -> str:
        """
        Append a log line to the scan's log and mirror it to the module logger.
        """
        timestamp = utcnow().isoformat()
        log_entry = f"[{timestamp}] [{level}] {message}"
        self.store.append_log(self.scan_id, log_entry)
        logger.info("scan %s: [%s] %s", self.scan_id, level, message)
        return log_entry

    def info(self, message: str) -> str:
        return self.log("INFO", message)

    def warning(self, message: str) -> str:
        return self.log("WARNING", message)

    def error(self, message: str) -> str:
        return self.log("ERROR", message)

    def phase(self, status: str) -> str:
        return self.log("SYSTEM", f"Status updated to: {status}")
