class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the entity does not exist or is not visible to the requester."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a unique or foreign-key constraint."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an access policy denies the operation for the requester."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""
