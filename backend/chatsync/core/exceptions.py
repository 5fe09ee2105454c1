"""Error taxonomy shared by the log, the registry, the engine and the API."""


class ChatSyncError(Exception):
    pass


class ConfigurationError(ChatSyncError):
    """Missing backend credentials or a missing store index. Never retried."""


class ClientError(ChatSyncError):
    """The completion backend answered with a 4xx status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Client Error: {status}")


class TransientError(ChatSyncError):
    """A 5xx status or a network-level failure."""

    def __init__(self, status: int | None = None, cause: Exception | None = None):
        self.status = status
        self.cause = cause
        if status is not None:
            message = f"Server Error: {status}"
        else:
            message = f"Network Error: {cause}"
        super().__init__(message)


class WriteError(ChatSyncError):
    pass


class ReadError(ChatSyncError):
    pass


class StreamError(ChatSyncError):
    """A live subscription terminated."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Subscription terminated: {cause}")


class ConversationNotFound(ChatSyncError):
    pass


class SubmissionRejected(ChatSyncError):
    pass


class InvalidMetadata(ChatSyncError):
    pass


class InvalidImage(ChatSyncError):
    pass


class ConfirmationRequired(ChatSyncError):
    pass
