"""Rich logging with structured context and better formatting."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "agent_fleet"


class FleetLogFormatter(logging.Formatter):
    """Custom formatter that prefixes agent and task context."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        agent_context = f"[{record.agent_id}] " if hasattr(record, "agent_id") else ""
        task_context = f"[{record.task_id}] " if hasattr(record, "task_id") else ""
        source_context = ""
        if hasattr(record, "source") and getattr(record, "source", None) != getattr(record, "agent_id", None):
            source_context = f"({record.source}) "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",      # Cyan
                "INFO": "\033[32m",       # Green
                "WARNING": "\033[33m",    # Yellow
                "ERROR": "\033[31m",      # Red
                "CRITICAL": "\033[35m",   # Magenta
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        line = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{agent_context}{task_context}{source_context}{record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that adds agent and task context to all log messages."""

    def __init__(self, logger: logging.Logger, agent_id: str):
        super().__init__(logger, {})
        self.agent_id = agent_id
        self.current_task_id: Optional[str] = None

    def set_task_context(self, task_id: Optional[str] = None):
        if task_id:
            self.current_task_id = task_id

    def clear_context(self):
        self.current_task_id = None

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra["agent_id"] = self.agent_id
        if self.current_task_id:
            extra["task_id"] = self.current_task_id
        kwargs["extra"] = extra
        return msg, kwargs

    def task_started(self, task_id: str, title: str):
        self.set_task_context(task_id=task_id)
        self.info(f"Starting task: {title}")

    def task_completed(self, duration_seconds: float, artifacts: int = 0):
        msg = f"Task completed in {duration_seconds:.1f}s"
        if artifacts:
            msg += f" ({artifacts} artifact(s))"
        self.info(msg)
        self.clear_context()

    def task_failed(self, error: str):
        self.error(f"Task failed: {error}")
        self.clear_context()


def setup_rich_logging(
    workspace: Path,
    log_level: str = "INFO",
    use_colors: bool = True,
    use_file: bool = True,
    use_json: bool = False,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        workspace: Workspace path; file logs go to ``workspace/logs`` unless
            ``log_dir`` is given
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        use_colors: ANSI colors on the console handler
        use_file: Also write ``fleet.log``
        use_json: Use JSON structured logging

    Returns:
        The configured ``agent_fleet`` logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Close existing handlers before clearing (prevents file descriptor leak)
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    if use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s",'
            '"task_id":"%(task_id)s","message":"%(message)s"}',
            defaults={"task_id": ""},
        )
    else:
        formatter = FleetLogFormatter(use_colors=use_colors and sys.stderr.isatty())

    # stdout belongs to CLI output
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if use_file:
        log_dir = log_dir or workspace / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "fleet.log")
        file_handler.setFormatter(FleetLogFormatter(use_colors=False))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
