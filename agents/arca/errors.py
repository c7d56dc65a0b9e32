"""Typed errors for the ARCA integration engine.

Callers catch by type, never by message. Each class carries a stable
``code`` for API responses and a ``retryable`` flag: only a duplicate number
and a transport failure are worth retrying, and only by re-running the whole
emission sequence (re-reading the last authorized number).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True, slots=True)
class Observation:
    """An observation or error code returned verbatim by the authority."""

    code: str
    message: str

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ArcaError(RuntimeError):
    code = "arca.error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class VaultError(ArcaError):
    """Encryption key missing/malformed or an envelope failed to decrypt."""

    code = "arca.vault"


# -- configuration -----------------------------------------------------------


class ConfigurationError(ArcaError):
    code = "arca.configuration"


class ProfileNotFoundError(ConfigurationError):
    code = "arca.configuration.profile_missing"


class ProfileNotVerifiedError(ConfigurationError):
    code = "arca.configuration.profile_unverified"


class SalesPointNotFoundError(ConfigurationError):
    code = "arca.configuration.sales_point_missing"


class InvalidCredentialFormatError(ConfigurationError):
    code = "arca.configuration.credential_format"


# -- authentication ----------------------------------------------------------


class AuthenticationError(ArcaError):
    code = "arca.authentication"

    def __init__(self, message: str, *, service: Optional[str] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.service = service


# -- validation --------------------------------------------------------------


class DocumentValidationError(ArcaError):
    code = "arca.validation"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any) -> None:
        if field is not None:
            details["field"] = field
        super().__init__(message, **details)
        self.field = field


# -- business rejection ------------------------------------------------------


class BusinessRejectionError(ArcaError):
    code = "arca.rejected"

    def __init__(
        self,
        message: str,
        *,
        observations: Sequence[Observation] = (),
        result: Optional[str] = None,
        **details: Any,
    ) -> None:
        super().__init__(message, **details)
        self.observations: List[Observation] = list(observations)
        self.result = result

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["observations"] = [{"code": o.code, "message": o.message} for o in self.observations]
        return payload


class DuplicateNumberError(BusinessRejectionError):
    """Another request took the candidate number first."""

    code = "arca.duplicate_number"
    retryable = True


# -- transport ---------------------------------------------------------------


class TransportError(ArcaError):
    code = "arca.transport"
    retryable = True


class RemoteTimeoutError(TransportError):
    code = "arca.transport.timeout"


class SoapFault(ArcaError):
    """The authority answered with a SOAP fault."""

    code = "arca.soap_fault"

    def __init__(self, faultcode: str, faultstring: str) -> None:
        super().__init__(f"{faultcode}: {faultstring}" if faultcode else faultstring)
        self.faultcode = faultcode
        self.faultstring = faultstring


def format_observations(observations: Sequence[Observation]) -> str:
    return ", ".join(str(o) for o in observations)


class AlreadyInvoicedError(DocumentValidationError):
    """The order or booking already has an issued invoice."""

    code = "arca.already_invoiced"

    def __init__(self, message: str, *, existing_document_id: str, **details: Any) -> None:
        super().__init__(message, existing_document_id=existing_document_id, **details)
        self.existing_document_id = existing_document_id
