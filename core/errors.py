"""
Error Taxonomy

Every failure the gateway surfaces to callers is an ExchangeError with a
stable `kind`, so calling code can tell "retry later" from "fix the request"
from "not supported here" without inspecting message strings.

    TransportError     network failure, timeout, exhausted rate-limit retries (retryable)
    AuthError          signature/nonce/credentials rejected (fatal, never retried)
    DomainError        exchange-reported business rejection, message kept verbatim
    UnknownSymbolError symbol that cannot be mapped for an exchange (a DomainError)
    IntegrityError     internal invariant violated (adapter or parsing bug)
    NotSupportedError  operation not offered by the exchange, raised before any call
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    AUTH = "auth"
    DOMAIN = "domain"
    INTEGRITY = "integrity"
    NOT_SUPPORTED = "not_supported"


class ExchangeError(Exception):
    """
    Base class for all gateway errors.

    Attributes:
        message: Human readable message; for exchange-reported errors this is
                 the exchange's own text, untranslated
        exchange: Name of the exchange the error came from (if known)
        raw: Raw payload that triggered the error (response body, frame, ...)
    """

    kind: ErrorKind = ErrorKind.DOMAIN

    def __init__(self, message: str, exchange: Optional[str] = None, raw: Any = None):
        super().__init__(message)
        self.message = message
        self.exchange = exchange
        self.raw = raw

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSPORT

    def __str__(self) -> str:
        prefix = f"[{self.exchange}] " if self.exchange else ""
        return f"{prefix}{self.message}"


class TransportError(ExchangeError):
    kind = ErrorKind.TRANSPORT


class AuthError(ExchangeError):
    kind = ErrorKind.AUTH


class DomainError(ExchangeError):
    kind = ErrorKind.DOMAIN


class UnknownSymbolError(DomainError):
    """Raised when a symbol has no mapping on an exchange."""

    def __init__(self, symbol: str, exchange: Optional[str] = None, reason: str = "no mapping"):
        super().__init__(f"Unknown symbol '{symbol}': {reason}", exchange=exchange, raw=symbol)
        self.symbol = symbol


class IntegrityError(ExchangeError):
    kind = ErrorKind.INTEGRITY


class NotSupportedError(ExchangeError):
    kind = ErrorKind.NOT_SUPPORTED
