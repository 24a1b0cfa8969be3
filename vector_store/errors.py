"""Exceptions raised by the vector store."""


class InvalidInputError(ValueError):
    """Raised when a caller or the embedding function hands the store malformed input."""
