"""
Custom Exceptions for the Event Check-in Service

This module defines custom exception classes that provide specific
error handling for the different failure scenarios of the check-in flow.
A duplicate scan is not an error and has no exception here.
"""


class CheckInException(Exception):
    """
    Base exception for the check-in service

    All custom exceptions in the service inherit from this base class
    so the HTTP layer can handle them consistently.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize check-in exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class UnrecognizedFormatException(CheckInException):
    """
    Raised when a scanned code matches none of the known code shapes

    Shown to door staff as "invalid QR code", which is a different
    message from a code that resolves but has no participant.
    """

    def __init__(self, raw_code: str = ""):
        """
        Initialize unrecognized format exception

        Args:
            raw_code: The raw scanned text (already coerced to str)
        """
        message = "This QR code is not recognized as a valid registration code"
        super().__init__(message, "UNRECOGNIZED_FORMAT")
        self.raw_code = raw_code


class ParticipantNotFoundException(CheckInException):
    """
    Raised when a registration identifier has no matching participant
    """

    def __init__(self, registration_id: str):
        """
        Initialize participant not found exception

        Args:
            registration_id: The identifier that did not resolve
        """
        message = f"Registration '{registration_id}' not found"
        super().__init__(message, "NOT_FOUND")
        self.registration_id = registration_id


class AuthenticationFailedException(CheckInException):
    """
    Raised when a staff login fails
    """

    def __init__(self, staff_id: str = None):
        """
        Initialize authentication failed exception

        Args:
            staff_id: Optional staff ID that failed authentication
        """
        if staff_id:
            message = f"Authentication failed for staff ID '{staff_id}'"
        else:
            message = "Authentication failed - invalid credentials"
        super().__init__(message, "AUTH_FAILED")
        self.staff_id = staff_id


class DataValidationException(CheckInException):
    """
    Raised when seed or request data fails validation
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class DataAccessException(CheckInException):
    """
    Raised when data access operations fail

    Thrown when reading from or writing to participant storage fails
    for a reason that retrying will not fix (corrupt file, bad data).
    """

    def __init__(self, operation: str, details: str, error_code: str = "DATA_ACCESS_ERROR"):
        """
        Initialize data access exception

        Args:
            operation: The operation that failed (e.g., 'read', 'write')
            details: Detailed error information
            error_code: Error code, overridden by subclasses
        """
        message = f"Data access error during {operation}: {details}"
        super().__init__(message, error_code)
        self.operation = operation
        self.details = details


class StoreUnavailableException(DataAccessException):
    """
    Raised when the participant store cannot be reached

    This is a transient failure. The check-in operation is idempotent,
    so the caller may retry with the same identifier.
    """

    def __init__(self, operation: str, details: str):
        super().__init__(operation, details, "STORE_UNAVAILABLE")
