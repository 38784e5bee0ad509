"""
Custom exceptions for the Stream Snapshot Service.
"""


class SnapshotServiceError(Exception):
    """Base exception for all snapshot service errors."""
    pass


class ConfigurationError(SnapshotServiceError):
    """Raised when configuration is invalid or missing."""
    pass


class CaptureError(SnapshotServiceError):
    """Raised when FFmpeg capture operations fail."""
    pass


class SpawnError(CaptureError):
    """Raised when the FFmpeg process cannot be started."""
    pass
