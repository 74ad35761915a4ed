class ConversionError(Exception):
    """Base error for the conversion pool. `code` is stable and safe to expose."""

    code = "conversion_error"


class ConversionAborted(ConversionError):
    code = "aborted"

    def __init__(self, message: str = "Conversion aborted") -> None:
        super().__init__(message)


class SourceNotFoundError(ConversionError):
    code = "source_not_found"

    def __init__(self, path: str) -> None:
        super().__init__(f"Source file not found: {path}")
        self.path = path


class ProcessUnavailable(ConversionError):
    code = "process_unavailable"

    def __init__(self, message: str = "No unoserver instances available") -> None:
        super().__init__(message)


class ConversionFailed(ConversionError):
    code = "conversion_failed"


class ConversionTimeout(ConversionFailed):
    pass


class ConversionInterrupted(ConversionFailed):
    """The instance was force-restarted while this conversion was running."""


class ConverterStartError(ConversionError):
    code = "start_failed"
