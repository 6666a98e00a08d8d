"""Run log exceptions."""


class RunLogError(Exception):
    """Raised when the run log cannot be read or written."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
