"""Typed failures surfaced by the RAG pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RAGErrorCode(str, Enum):
    AUTH = "AUTH"
    SEARCH = "SEARCH"
    AI_PROVIDER = "AI_PROVIDER"
    INVALID_INPUT = "INVALID_INPUT"
    NO_DOCUMENTS = "NO_DOCUMENTS"


class RAGError(Exception):
    """
    A pipeline failure with a machine-readable code.

    ``recoverable`` tells the caller whether a friendlier message (e.g. "no
    records matched") is appropriate instead of a generic failure.
    """

    def __init__(
        self,
        message: str,
        code: RAGErrorCode,
        recoverable: bool,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = RAGErrorCode(code)
        self.recoverable = recoverable
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __repr__(self) -> str:
        return f"RAGError(code={self.code.value}, recoverable={self.recoverable}, message={self.message!r})"
