"""Error taxonomy for the product vector store.

Backend transport failures are not wrapped: qdrant-client exceptions reach the
caller unchanged unless the error translator recognises a dimension mismatch.
"""


class ProductStoreError(Exception):
    """Base class for errors raised by the product store."""


class NotFoundError(ProductStoreError):
    """The product does not exist or belongs to another account."""


class ValidationError(ProductStoreError, ValueError):
    """Malformed input: vector shape, missing slot, blank id or account."""


class DimensionMismatchError(ValidationError):
    def __init__(self, expected: int, actual: int, message: str = None):
        self.expected = expected
        self.actual = actual
        super().__init__(
            message or f"Vector dimension mismatch (expected {expected}, got {actual})"
        )


class ConfigurationInvalidError(ProductStoreError):
    """The collection exists but lacks the required named-vector schema."""

    def __init__(self, collection_name: str, message: str, missing=()):
        self.collection_name = collection_name
        self.missing = tuple(missing)
        super().__init__(message)
