"""Exception hierarchy and error codes.

Invariant errors propagate to the caller. Upload errors are raised by the
``Uploader`` port and translated by the sync orchestrator into an
``UploadResult`` plus an ``ErrorCode`` sent through the notifier.
"""

from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    UNKNOWN = 0
    UNAUTHORIZED = 1
    MALFORMED_URL = 2
    UNREADABLE_HTTP_RESPONSE = 3
    SERVER_UNAVAILABLE = 4
    NETWORK_ERROR = 5
    DATABASE_ERROR = 6
    AUTHENTICATION_ERROR = 7
    AUTHENTICATION_CANCELED = 8
    SYNCHRONIZATION_ERROR = 9
    DATA_TRANSMISSION_ERROR = 10
    SSL_CERTIFICATE_UNKNOWN = 11
    BAD_REQUEST = 12
    FORBIDDEN = 13
    INTERNAL_SERVER_ERROR = 14
    ENTITY_NOT_PARSABLE = 15
    NETWORK_UNAVAILABLE = 16
    SYNCHRONIZATION_INTERRUPTED = 17
    TOO_MANY_REQUESTS = 18
    HOST_UNRESOLVABLE = 19
    UPLOAD_SESSION_EXPIRED = 20
    UNEXPECTED_RESPONSE_CODE = 21
    ACCOUNT_NOT_ACTIVATED = 22
    FORMAT_MISMATCH = 23


class TripSdkError(Exception):
    """Base class for all errors raised by tripsdk."""


# -- Lifecycle / invariant errors ------------------------------------------

class CorruptedMeasurementError(TripSdkError):
    """An unfinished (OPEN or PAUSED) measurement exists when it must not."""


class NoSuchMeasurementError(TripSdkError):
    pass


class NoSuchAttachmentError(TripSdkError):
    pass


class InvalidTransitionError(TripSdkError):
    """A status change was requested from a status that does not allow it."""


class DataCapturingError(TripSdkError):
    """The capture collaborator could not be started or stopped."""


class StoreUnavailableError(TripSdkError):
    """The local store could not be read or written."""


# -- Codec / format errors -------------------------------------------------

class CorruptBufferError(TripSdkError):
    pass


class FormatVersionMismatchError(TripSdkError):
    """Input data was persisted in a different format version than expected."""


class FormatMismatchError(TripSdkError):
    """A measurement or attachment cannot be uploaded in its stored format."""


# -- Sync errors -----------------------------------------------------------

class SyncAlreadyRunningError(TripSdkError):
    pass


class AuthenticationError(TripSdkError):
    """No valid credential could be obtained for an upload."""


class UploadFailedError(TripSdkError):
    """Base class for failures reported by an ``Uploader``."""


class ServerUnavailableError(UploadFailedError):
    pass


class ForbiddenError(UploadFailedError):
    pass


class UnauthorizedError(UploadFailedError):
    pass


class SynchronisationError(UploadFailedError):
    pass


class InternalServerError(UploadFailedError):
    pass


class EntityNotParsableError(UploadFailedError):
    pass


class BadRequestError(UploadFailedError):
    pass


class NetworkUnavailableError(UploadFailedError):
    pass


class SynchronizationInterruptedError(UploadFailedError):
    pass


class TooManyRequestsError(UploadFailedError):
    pass


class UploadSessionExpiredError(UploadFailedError):
    pass


class UnexpectedResponseCodeError(UploadFailedError):
    pass


class AccountNotActivatedError(UploadFailedError):
    pass


class MeasurementTooLargeError(UploadFailedError):
    """The collector refuses the file because of its size. Not a user error."""


class ConflictError(UploadFailedError):
    """The collector already has this file. Treated as a successful upload."""
