"""Translate engine errors to operator-friendly messages for the CLI."""

import re
from dataclasses import dataclass
from typing import List, Optional

from .exceptions import ConfigurationError


@dataclass
class UserFriendlyError:
    """User-friendly error representation."""
    original_error: Exception
    title: str
    explanation: str
    actions: List[str]
    details: List[str]
    show_technical: bool = False


class ErrorTranslator:
    """Map exception type/message patterns to guidance for operators."""

    ERROR_PATTERNS = {
        r"GraphError": {
            "title": "Workflow graph contains a cycle",
            "explanation": "Steps transition back into themselves, so an instance could loop forever.",
            "actions": [
                "Run 'jml-workflow validate <file>' to see the cycle path",
                "Break the loop or route it through an End step",
            ],
        },
        r"ConfigurationError": {
            "title": "Workflow definition is not publishable",
            "explanation": "The definition failed validation and cannot be published.",
            "actions": [
                "Run 'jml-workflow validate <file>' for the full report",
                "Fix every error; warnings do not block publish",
            ],
        },
        r"InvalidStateError": {
            "title": "Operation not allowed in current status",
            "explanation": "The instance or item is not in a status that permits this action.",
            "actions": [
                "Check current status: jml-workflow status <instance-id>",
            ],
        },
        r"NotFoundError": {
            "title": "Record not found",
            "explanation": "The referenced instance, definition or queue item does not exist.",
            "actions": [
                "List instances: jml-workflow status",
                "List dead-letter items: jml-workflow dlq list",
            ],
        },
        r"TransientDeliveryError|connection.*refused|timed? ?out": {
            "title": "Delivery failed",
            "explanation": "A notification or resume attempt failed and was queued for retry.",
            "actions": [
                "Inspect the dead-letter queue: jml-workflow dlq list",
                "Retry manually: jml-workflow dlq retry <item-id>",
            ],
        },
        r"config.*not.*found|no such file": {
            "title": "File not found",
            "explanation": "A config or definition file could not be read.",
            "actions": [
                "Check the path passed on the command line",
            ],
        },
    }

    def translate(self, error: Exception) -> UserFriendlyError:
        error_str = str(error)
        error_type = type(error).__name__
        full_error = f"{error_type}: {error_str}"
        details = list(error.issues) if isinstance(error, ConfigurationError) else []

        for pattern, translation in self.ERROR_PATTERNS.items():
            if re.search(pattern, full_error, re.IGNORECASE):
                return UserFriendlyError(
                    original_error=error,
                    title=translation["title"],
                    explanation=translation["explanation"],
                    actions=translation["actions"],
                    details=details,
                )

        return UserFriendlyError(
            original_error=error,
            title="Unexpected error",
            explanation=error_str,
            actions=["Re-run with --verbose for the full log"],
            details=details,
            show_technical=True,
        )

    def format_for_cli(self, friendly_error: UserFriendlyError) -> str:
        output = f"[bold red]{friendly_error.title}[/]\n\n"
        output += f"{friendly_error.explanation}\n"

        for detail in friendly_error.details:
            output += f"  - {detail}\n"

        output += "\n[bold]How to fix:[/]\n"
        for i, action in enumerate(friendly_error.actions, 1):
            output += f"  {i}. {action}\n"

        if friendly_error.show_technical:
            output += f"\n[dim]Technical details:[/]\n[dim]{friendly_error.original_error!r}[/]"

        return output
