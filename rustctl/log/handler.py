import sys
import socket
import logging
import requests
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional


class LokiHandler(logging.Handler):
    """
    A logging handler that ships records to a Grafana Loki instance
    in batches using a background thread.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: float = 10, batch_size: int = 200):
        """
        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (sent as 'X-Scope-OrgID').
        :param flush_interval: Seconds between periodic pushes.
        :param batch_size: Push immediately once this many records are buffered.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self.hostname = socket.gethostname()
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        # Serializes pushes so batches reach Loki in order.
        self.send_lock = threading.Lock()

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True, name="LokiFlushThread")
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def _entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        if record.name.startswith("proc."):
            # Child output: label it with the child's name.
            msg = record.getMessage()
            logger_name = record.name.split(".", 1)[-1]
        else:
            msg = self.format(record)
            logger_name = record.name
        return {
            "stream": {
                "job": "rustctl",
                "level": record.levelname.lower(),
                "hostname": self.hostname,
                "logger": logger_name,
            },
            "values": [[str(int(record.created * 1e9)), msg]],
        }

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = self._entry(record)
        except Exception:
            self.handleError(record)
            return
        with self.buffer_lock:
            self.log_buffer.append(entry)
            full = len(self.log_buffer) >= self.batch_size
        if full:
            self.flush()

    def _take_batch(self) -> List[Dict[str, Any]]:
        with self.buffer_lock:
            batch = list(self.log_buffer)
            self.log_buffer.clear()
        return batch

    def flush(self) -> None:
        """Pushes everything buffered so far. The network call happens outside the buffer lock."""
        with self.send_lock:
            batch = self._take_batch()
            if not batch:
                return
            headers = {"Content-Type": "application/json"}
            if self.org_id:
                headers["X-Scope-OrgID"] = self.org_id
            try:
                response = requests.post(self.url, json={"streams": batch}, headers=headers, timeout=5)
            except requests.RequestException as e:
                # Logging here would feed back into this handler.
                print(f"CRITICAL: Failed to send {len(batch)} logs to Loki: {e}", file=sys.stderr)
                return
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}", file=sys.stderr)

    def close(self) -> None:
        """Stops the flush thread after a final push."""
        self.stop_event.set()
        if self.flush_thread.is_alive():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
