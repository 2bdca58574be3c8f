"""Exception types raised by the apptop sampling layer."""


class SamplingError(Exception):
    """Base class for failures while sampling kernel counters."""


class SourceUnreadableError(SamplingError):
    """A required kernel file or external tool is missing or unreadable."""


class VanishedEntityError(SourceUnreadableError):
    """A process, device or core disappeared before it could be read."""


class MalformedDataError(SamplingError):
    """A source was read but its contents could not be parsed."""


class CoreIndexError(SamplingError, IndexError):
    """The requested core index exceeds the cores reported by the kernel."""
