from __future__ import annotations


class ExtractionError(RuntimeError):
    pass


class MalformedExtractionError(ExtractionError):
    """The model answered, but its output cannot be used for a whole document."""


class ExtractionServiceError(ExtractionError):
    """The extraction service could not be reached or rejected the request."""


class FileProcessingError(ExtractionError):
    def __init__(self, file_name: str, reason: str) -> None:
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"Failed to process {file_name}. Reason: {reason}")
