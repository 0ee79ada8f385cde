"""Logging with workflow instance/step context."""

import logging
import sys
from datetime import datetime
from typing import Optional


class WorkflowLogFormatter(logging.Formatter):
    """Formatter that prefixes records with instance and step context."""

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        context = ""
        instance_id = getattr(record, "instance_id", None)
        step_id = getattr(record, "step_id", None)
        if instance_id and step_id:
            context = f"[{instance_id}/{step_id}] "
        elif instance_id:
            context = f"[{instance_id}] "

        if self.use_colors:
            level_colors = {
                "DEBUG": "\033[36m",
                "INFO": "\033[32m",
                "WARNING": "\033[33m",
                "ERROR": "\033[31m",
                "CRITICAL": "\033[35m",
            }
            reset = "\033[0m"
            level_color = level_colors.get(record.levelname, "")
        else:
            level_color = ""
            reset = ""

        message = (
            f"{timestamp} {level_color}{record.levelname:8s}{reset} "
            f"{record.name.split('.')[-1]}: {context}{record.getMessage()}"
        )
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


class InstanceLogger(logging.LoggerAdapter):
    """Logger adapter that stamps instance/step ids onto every record."""

    def __init__(self, logger: logging.Logger, instance_id: Optional[str] = None):
        super().__init__(logger, {})
        self.instance_id = instance_id
        self.step_id: Optional[str] = None

    def set_step(self, step_id: Optional[str]) -> None:
        self.step_id = step_id

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        if self.instance_id:
            extra["instance_id"] = self.instance_id
        if self.step_id:
            extra["step_id"] = self.step_id
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str = "INFO", use_colors: Optional[bool] = None) -> None:
    """Install the workflow formatter on the package logger."""
    if use_colors is None:
        use_colors = sys.stderr.isatty()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(WorkflowLogFormatter(use_colors=use_colors))

    package_logger = logging.getLogger("jml_workflow")
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.propagate = False
