class StoreError(ValueError):
    """Base class for user-visible store errors."""

    code = "bad_request"


class StoreValidationError(StoreError):
    code = "validation_error"


class StoreNotFoundError(StoreError):
    code = "not_found"


class StorePermissionError(StoreError):
    code = "forbidden"


class StoreConflictError(StoreError):
    code = "conflict"


class OpenRequestLimitError(StoreConflictError):
    code = "open_request_limit"


class DuplicateRequestError(StoreConflictError):
    code = "duplicate_request"


class RequestNotOpenError(StoreConflictError):
    code = "request_not_open"


class OfferExistsError(StoreConflictError):
    code = "offer_exists"


class OfferLimitReachedError(StoreConflictError):
    code = "offer_limit_reached"


class NoSubscriptionError(StoreConflictError):
    code = "no_subscription"


class QuotaExhaustedError(StoreConflictError):
    code = "quota_exhausted"


class InsufficientPointsError(StoreConflictError):
    code = "insufficient_points"


class OfferAlreadyProcessedError(StoreConflictError):
    code = "offer_already_processed"


class InvalidStateError(StoreConflictError):
    code = "invalid_state"
