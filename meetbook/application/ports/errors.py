class RepositoryError(RuntimeError):
    """Base class for errors raised by repository implementations."""
    pass


class NotFoundError(RepositoryError):
    """The requested entity does not exist."""
    pass


class InvalidInputError(RepositoryError):
    """The supplied data violates repository constraints."""
    pass


class DuplicateError(RepositoryError):
    """The entity violates a uniqueness constraint."""
    pass


class ConflictError(RepositoryError):
    """A concurrent modification or overlapping record was detected."""
    pass


class SchemaMissingError(RepositoryError):
    """The backing table or database does not exist."""
    pass


class AccessDeniedError(RepositoryError):
    """The store refused access with the configured credentials."""
    pass


class StoreUnavailableError(RepositoryError):
    """The backing store is not configured or cannot be opened."""
    pass
