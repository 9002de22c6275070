class CirculationError(Exception):
    default_message = "Something went wrong."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(CirculationError):
    default_message = "The request is missing required information."


class ConflictError(CirculationError):
    default_message = "That copy is not available for checkout."


class NotFoundError(CirculationError):
    default_message = "The requested record could not be found."


class DuplicateHoldError(CirculationError):
    default_message = "You already have an active hold for this book."


class AlreadyReturnedError(CirculationError):
    default_message = "This loan has already been returned."


class InvalidStateError(CirculationError):
    default_message = "This action is not allowed in the record's current state."


class ForbiddenError(CirculationError):
    default_message = "You do not have permission to change this record."


class StorageError(CirculationError):
    """Driver failure; ``message`` stays generic, ``str(exc)`` carries the detail for logs."""

    default_message = "We couldn't reach the library database. Please try again."

    def __init__(self, detail=None):
        super().__init__(self.default_message)
        self.detail = detail or self.default_message

    def __str__(self):
        return self.detail


class ConstraintViolation(StorageError):
    """A write was rejected by a uniqueness or foreign-key constraint."""
