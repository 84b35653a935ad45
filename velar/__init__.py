"""
Velar Pipeline

Capture-to-inference pipeline: screen and audio captures are queued on disk,
sent to a cloud or locally hosted model service for analysis, and optionally
refined through a second debug pass with additional captures.
"""

import os
from pathlib import Path

__version__ = "0.3.0"
__author__ = "Velar Team"
__description__ = "Screen capture to AI analysis pipeline"

# Application metadata
APP_NAME = "Velar"
APP_VERSION = __version__
APP_AUTHOR = __author__
APP_DESCRIPTION = __description__


def get_app_data_dir() -> str:
    """
    Get the application data directory for captures and log files.

    On Windows, this uses %APPDATA%\\Velar
    On other platforms, this uses $XDG_DATA_HOME/Velar or ~/.local/share/Velar

    Returns:
        Path to the application data directory as a string
    """
    override = os.getenv('VELAR_DATA_DIR')
    if override:
        return str(Path(override).expanduser())

    if os.name == 'nt':  # Windows
        appdata = os.getenv('APPDATA')
        if appdata:
            return str(Path(appdata) / APP_NAME)
        return str(Path.home() / f".{APP_NAME.lower()}")

    xdg_data = os.getenv('XDG_DATA_HOME')
    if xdg_data:
        return str(Path(xdg_data) / APP_NAME)
    return str(Path.home() / ".local" / "share" / APP_NAME)


# Configuration constants
DEFAULT_LOG_LEVEL = "INFO"
PRIMARY_CAPTURE_DIR = "screenshots"
SECONDARY_CAPTURE_DIR = "extra_screenshots"


class EventTypes:
    """Central registry of event types for the EventBus system."""

    # Capture queue
    CAPTURE_COMPLETED = "capture.completed"
    CAPTURE_FAILED = "capture.failed"
    QUEUE_ENTRY_EVICTED = "queue.entry_evicted"
    QUEUE_ENTRY_DELETED = "queue.entry_deleted"
    QUEUE_CLEARED = "queue.cleared"
    QUEUE_MODE_CHANGED = "queue.mode_changed"

    # Request lifecycle (payload carries the queue kind)
    PROCESSING_NO_INPUT = "processing.no_input"
    PROCESSING_STARTED = "processing.started"
    PROCESSING_SUCCEEDED = "processing.succeeded"
    PROCESSING_FAILED = "processing.failed"
    PROCESSING_CANCELLED = "processing.cancelled"

    # Inference client
    BACKEND_SWITCHED = "inference.backend_switched"
    CATALOG_REFRESHED = "inference.catalog_refreshed"
    CATALOG_REFRESH_FAILED = "inference.catalog_refresh_failed"
    CONNECTION_TESTED = "inference.connection_tested"

    # Settings
    SETTINGS_UPDATED = "settings.updated"

    # Application lifecycle
    APP_SHUTDOWN = "app.shutdown"

    # Error events
    ERROR_OCCURRED = "error.occurred"
