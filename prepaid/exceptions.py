class PrepaidError(Exception):
    pass


class NotFoundError(PrepaidError):
    """Raised when a user or transaction cannot be resolved."""


class ConflictError(PrepaidError):
    """Raised when registration would break email or meter uniqueness."""

    def __init__(self, field, value):
        self.field = field
        self.value = value
        super().__init__(f"User with this {field} already exists")


class ValidationError(PrepaidError):
    """Raised when required input is missing or malformed."""


class UpstreamFailure(PrepaidError):
    """Raised when the payment gateway is unreachable or rejects a request."""

    def __init__(self, message, gateway_error=None):
        self.gateway_error = gateway_error
        super().__init__(message)


class StoreError(PrepaidError):
    """Raised when the ledger store cannot complete an operation."""


class WriteConflict(StoreError):
    """Raised when an optimistic field transaction loses a race."""

    def __init__(self, collection, doc_id, field):
        self.collection = collection
        self.doc_id = doc_id
        self.field = field
        super().__init__(f"Concurrent write on {collection}/{doc_id}.{field}")


class DuplicateKeyError(StoreError):
    """Raised when a write would give two documents the same unique field value."""

    def __init__(self, collection, field, value, existing_id):
        self.collection = collection
        self.field = field
        self.value = value
        self.existing_id = existing_id
        super().__init__(f"{collection}.{field} {value!r} already held by {existing_id}")
