"""Shared constants for taskvault."""

APP_VERSION = "0.1.0"

# Project name used when init is given none
DEFAULT_PROJECT_NAME = "project"

# Rendered in backup metadata and log details
NOTE_PREVIEW_LENGTH = 200


def truncate(text: str, max_length: int = NOTE_PREVIEW_LENGTH) -> str:
    """Truncate text with ellipsis if it exceeds max_length."""
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
