class MeetScribeError(RuntimeError):
    pass


class ValidationError(MeetScribeError):
    """Bad or missing input, detected before any I/O."""


class SessionNotFoundError(ValidationError):
    pass


class UploadError(MeetScribeError):
    pass


class SubmissionError(MeetScribeError):
    pass


class ProviderError(MeetScribeError):
    """The remote service reported a failure or could not be reached."""


class PollTimeoutError(ProviderError):
    pass


class EmptyResultError(MeetScribeError):
    pass


class MalformedResponseError(MeetScribeError):
    pass


class UnknownStatusError(MeetScribeError):
    pass


class OperationCancelledError(MeetScribeError):
    pass


class AlreadyRecordingError(MeetScribeError):
    pass


class DeviceError(MeetScribeError):
    pass


class PersistenceError(MeetScribeError):
    pass


class ExportError(MeetScribeError):
    pass


class MixError(DeviceError):
    """Mixing failed after capture; ``fallback_path`` still holds usable audio."""

    def __init__(self, message: str, fallback_path=None):
        super().__init__(message)
        self.fallback_path = fallback_path
