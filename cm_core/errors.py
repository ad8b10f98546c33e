from __future__ import annotations


class ExporterError(Exception):
    """Base class for fatal exporter failures."""


class ConfigurationError(ExporterError):
    pass


class ProviderConnectionError(ExporterError):
    pass


class BackfillError(ExporterError):
    """A windowed historical query failed; the backfill cannot continue."""


class StreamClosedError(ExporterError):
    """The live subscription ended or errored."""


class CheckpointError(ExporterError):
    pass


class PendingBufferOverflow(ExporterError):
    pass
