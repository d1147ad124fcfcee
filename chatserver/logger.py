"""
Echo Chat - Server Logger
===========================
Dual-output logger: writes to per-day log files AND echoes to the terminal.

Log files are stored in data/logs/ with filenames like 2026-10-19.log.
Each line looks like:

    [2026-10-19 21:04:05] [CONN] New connection from 127.0.0.1:51422

Passwords never reach this logger. Whisper bodies are logged by length only.
"""

import os
import threading
from datetime import datetime


class ServerLogger:
    """
    Append-only logger shared by every server component.

    Attributes:
        log_dir: Directory for log files (None disables file output).
        echo:    Whether lines are also printed to the terminal.
    """

    def __init__(self, log_dir: str | None = None, echo: bool = True):
        """
        Initialize the logger.

        Args:
            log_dir: Directory path for log files. Created if missing.
            echo:    Print each line to stdout as well.
        """
        self.log_dir = log_dir
        self.echo = echo
        self._lock = threading.Lock()

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    def _get_log_path(self) -> str:
        """Get today's log file path."""
        today = datetime.now().strftime("%Y-%m-%d")
        return os.path.join(self.log_dir, f"{today}.log")

    def _timestamp(self) -> str:
        """Get current time formatted for log entries."""
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _write(self, text: str) -> None:
        """Append a line to today's log file."""
        if not self.log_dir:
            return
        try:
            with self._lock:
                with open(self._get_log_path(), "a", encoding="utf-8") as f:
                    f.write(text + "\n")
        except OSError:
            pass

    def _emit(self, tag: str, text: str) -> None:
        line = f"[{self._timestamp()}] [{tag}] {text}"
        self._write(line)
        if self.echo:
            print(line, flush=True)

    def info(self, text: str) -> None:
        """Log an informational message."""
        self._emit("INFO", text)

    def warning(self, text: str) -> None:
        """Log a recoverable problem (delivery or audit-log failures)."""
        self._emit("WARN", text)

    def error(self, text: str) -> None:
        """Log an unexpected error."""
        self._emit("ERROR", text)

    def connection(self, text: str) -> None:
        """Log a connection lifecycle event (connect, auth, disconnect)."""
        self._emit("CONN", text)

    def chat(self, text: str) -> None:
        """Log a routed chat message."""
        self._emit("CHAT", text)
