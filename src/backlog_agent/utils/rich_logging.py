"""Console/file logging with per-task context."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "backlog_agent"


class OrchestratorLogFormatter(logging.Formatter):
    """Formatter that prefixes records with the worker name and task context."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, worker_name: str, use_colors: bool = True):
        super().__init__()
        self.worker_name = worker_name
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        task_context = ""
        if hasattr(record, "task_id"):
            task_context = f"[{record.task_id[:8]}] "

        provider_context = ""
        if hasattr(record, "provider"):
            provider_context = f"[{record.provider}] "

        if self.use_colors:
            level_color = self.LEVEL_COLORS.get(record.levelname, "")
            reset = "\033[0m"
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"[{self.worker_name}] {provider_context}{task_context}{record.getMessage()}"
        )
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps the current task onto every record."""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})
        self.current_task_id: Optional[str] = None
        self.current_provider: Optional[str] = None

    def set_task_context(self, task_id: Optional[str] = None, provider: Optional[str] = None):
        if task_id:
            self.current_task_id = task_id
        if provider:
            self.current_provider = provider

    def clear_context(self):
        self.current_task_id = None
        self.current_provider = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        if self.current_provider:
            extra["provider"] = self.current_provider
        kwargs["extra"] = extra
        return msg, kwargs

    def task_started(self, task_id: str, title: str, provider: Optional[str] = None):
        self.set_task_context(task_id=task_id, provider=provider)
        self.info(f"📋 Processing task: {title}")

    def task_finished(self, duration_seconds: float):
        self.info(f"✅ Task finished in {duration_seconds:.1f}s")
        self.clear_context()

    def task_failed(self, error: str):
        self.error(f"❌ Task failed: {error}")
        self.clear_context()


def setup_rich_logging(
    worker_name: str,
    workspace: Path,
    log_level: str = "INFO",
    use_file: bool = True,
) -> ContextLogger:
    """
    Configure the package logger and return a task-aware adapter.

    Every module logs through ``logging.getLogger(__name__)`` under the
    ``backlog_agent`` namespace, so handlers attached here see all of them.

    Args:
        worker_name: Name shown in every log line
        workspace: Directory whose ``logs/`` subdirectory receives the log file
        log_level: DEBUG, INFO, WARNING or ERROR
        use_file: Also write a plain-text log file
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers so repeated setup doesn't leak descriptors
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    use_colors = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(OrchestratorLogFormatter(worker_name, use_colors=use_colors))
    logger.addHandler(console_handler)

    if use_file:
        log_dir = workspace / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{worker_name}.log")
        file_handler.setFormatter(OrchestratorLogFormatter(worker_name, use_colors=False))
        logger.addHandler(file_handler)

    logger.propagate = False
    return ContextLogger(logger)
