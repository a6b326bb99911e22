"""Error taxonomy shared by the capture, transcription and chat layers."""

from __future__ import annotations


class MeetingHelperError(Exception):
    """Base class for every failure the core reports."""


class ConfigurationError(MeetingHelperError):
    """Missing or invalid settings; the user can fix it and retry."""


class InvalidCredentials(ConfigurationError):
    pass


class DeviceError(MeetingHelperError):
    """A capture device or its format converter failed."""


class DeviceUnavailable(DeviceError):
    pass


class ConverterError(DeviceError):
    pass


class CapturePermissionError(MeetingHelperError):
    """System audio could not be captured. Never fatal to a session."""


class PermissionDenied(CapturePermissionError):
    pass


class NoShareableDisplay(CapturePermissionError):
    pass


class BackendError(MeetingHelperError):
    """The transcription or chat backend rejected or dropped the request."""
