"""Centralized logging configuration with Supabase support.

This module provides:
- JSONFormatter for structured logging
- SupabaseHandler for centralized log collection (batched)
- Fallback to stderr-only when Supabase is unavailable

Messages follow the `[TAG] message` convention; the tag is split out into its
own column when shipped to Supabase.
"""

import atexit
import logging
import re
import socket
import sys
import threading
from queue import Queue, Empty
from typing import Optional

TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service_name: str = None, instance: str = None):
        super().__init__()
        self.service_name = service_name or "m365-mcp-bridge"
        self.instance = instance or socket.gethostname()

    def format(self, record: logging.LogRecord) -> dict:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "service": self.service_name,
            "instance": self.instance,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": {
                "logger": record.name,
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return log_entry


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class SupabaseHandler(logging.Handler):
    """Logging handler that batches logs and sends to Supabase.

    Logs are buffered and sent in batches to reduce database writes.
    Flush occurs every flush_interval seconds or when batch_size is reached.
    """

    def __init__(
        self,
        supabase_client,
        service_name: str,
        batch_size: int = 20,
        flush_interval: float = 10.0,
        table: str = "logs",
    ):
        super().__init__()
        self.supabase = supabase_client
        self.service_name = service_name
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.table = table

        self._queue: Queue = Queue()
        self._lock = threading.RLock()
        self._shutdown = threading.Event()
        self._flush_thread = threading.Thread(target=self._flush_worker, daemon=True)
        self._flush_thread.start()

        atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        """Queue a log record for batched sending."""
        try:
            if isinstance(self.formatter, JSONFormatter):
                log_entry = self.formatter.format(record)
            else:
                log_entry = JSONFormatter(self.service_name).format(record)

            self._queue.put(log_entry)

            if self._queue.qsize() >= self.batch_size:
                self.flush()

        except Exception:
            self.handleError(record)

    def _flush_worker(self):
        """Background thread that flushes logs periodically."""
        while not self._shutdown.wait(self.flush_interval):
            if not self._queue.empty():
                self.flush()

    def drain(self, limit: int) -> list[dict]:
        logs = []
        while len(logs) < limit:
            try:
                logs.append(self._queue.get_nowait())
            except Empty:
                break
        return logs

    def flush(self):
        """Send queued logs to Supabase."""
        with self._lock:
            logs = self.drain(self.batch_size * 2)  # Don't flush too many at once
            if not logs or not self.supabase:
                return
            try:
                self.supabase.table(self.table).insert(logs).execute()
            except Exception as e:
                # Log to stderr if Supabase fails (avoid recursion)
                print(f"[WARNING] Failed to send {len(logs)} logs to Supabase: {e}", file=sys.stderr)

    def close(self):
        """Flush remaining logs and stop the background thread."""
        if not self._shutdown.is_set():
            self._shutdown.set()
            self.flush()
        super().close()


# Global reference to Supabase handler for flushing
_supabase_handler: Optional[SupabaseHandler] = None


def setup_logging(
    service_name: str = "m365-mcp-bridge",
    supabase_client=None,
    level: str = "INFO",
) -> logging.Logger:
    """Configure logging with optional Supabase integration.

    Args:
        service_name: Service name recorded on every shipped log row.
        supabase_client: Supabase client instance for remote logging.
        level: Root log level name (LOG_LEVEL).

    Returns:
        Configured root logger.
    """
    global _supabase_handler

    log_level = logging.getLevelName(str(level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        if handler is _supabase_handler:
            handler.close()
            _supabase_handler = None

    # Always add stderr handler (plain text for readability)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(log_level)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    supabase_enabled = False
    if supabase_client:
        try:
            _supabase_handler = SupabaseHandler(
                supabase_client=supabase_client,
                service_name=service_name,
            )
            _supabase_handler.setLevel(max(log_level, logging.INFO))
            _supabase_handler.setFormatter(JSONFormatter(service_name))
            root_logger.addHandler(_supabase_handler)
            supabase_enabled = True
        except Exception as e:
            print(f"[WARNING] Supabase logging setup failed: {e}", file=sys.stderr)

    # Suppress noisy HTTP client logs (upstream and Graph calls use httpx)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if supabase_enabled:
        logger.info(f"[STARTUP] Supabase logging enabled for service: {service_name}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")

    return root_logger


def flush_logs():
    """Manually flush any pending logs to Supabase."""
    if _supabase_handler:
        _supabase_handler.flush()
