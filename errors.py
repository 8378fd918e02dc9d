# errors.py


class JobStreamError(Exception):
    """Base error; status_code is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(JobStreamError):
    status_code = 400


class NotFound(JobStreamError):
    status_code = 404


class TransientIOError(JobStreamError):
    status_code = 503


class ProcessingError(JobStreamError):
    status_code = 500


class InvalidTransition(ValueError):
    pass
