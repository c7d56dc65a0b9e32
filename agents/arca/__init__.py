"""Electronic invoicing against ARCA (WSAA / WSFEv1 / padrón)."""

from .constants import (
    CREDIT_NOTE_FOR,
    DOC_CUIL,
    DOC_CUIT,
    DOC_DNI,
    DOC_FINAL_CONSUMER,
    INVOICE_A,
    INVOICE_B,
    INVOICE_C,
    REGIME_FULL,
    REGIME_SIMPLIFIED,
    SERVICE_WSFE,
)
from .credit_notes import CreditNoteEngine, voids_original
from .dto import (
    AuthorizedDocument,
    Buyer,
    ConnectionTestResult,
    IssuerContext,
    LineItem,
    SessionCredential,
    TaxBreakdown,
)
from .errors import (
    AlreadyInvoicedError,
    ArcaError,
    AuthenticationError,
    BusinessRejectionError,
    ConfigurationError,
    DocumentValidationError,
    DuplicateNumberError,
    Observation,
    ProfileNotFoundError,
    ProfileNotVerifiedError,
    SalesPointNotFoundError,
    InvalidCredentialFormatError,
    TransportError,
    RemoteTimeoutError,
    VaultError,
)
from .invoicing import InvoiceEmissionEngine, select_document_type, split_tax
from .numbering import EmissionSerializer
from .padron import TaxpayerCache, TaxpayerInfo, TaxpayerRegistry
from .session_cache import SessionCache
from .transport import SoapTransport
from .vault import CredentialVault
from .wsaa import AuthSessionManager
from .wsfe import WsfeClient

__all__ = [
    "CREDIT_NOTE_FOR",
    "DOC_CUIL",
    "DOC_CUIT",
    "DOC_DNI",
    "DOC_FINAL_CONSUMER",
    "INVOICE_A",
    "INVOICE_B",
    "INVOICE_C",
    "REGIME_FULL",
    "REGIME_SIMPLIFIED",
    "SERVICE_WSFE",
    "CreditNoteEngine",
    "voids_original",
    "AuthorizedDocument",
    "Buyer",
    "ConnectionTestResult",
    "IssuerContext",
    "LineItem",
    "SessionCredential",
    "TaxBreakdown",
    "AlreadyInvoicedError",
    "ArcaError",
    "AuthenticationError",
    "BusinessRejectionError",
    "ConfigurationError",
    "DocumentValidationError",
    "DuplicateNumberError",
    "Observation",
    "ProfileNotFoundError",
    "ProfileNotVerifiedError",
    "SalesPointNotFoundError",
    "InvalidCredentialFormatError",
    "TransportError",
    "RemoteTimeoutError",
    "VaultError",
    "InvoiceEmissionEngine",
    "select_document_type",
    "split_tax",
    "EmissionSerializer",
    "TaxpayerCache",
    "TaxpayerInfo",
    "TaxpayerRegistry",
    "SessionCache",
    "SoapTransport",
    "CredentialVault",
    "AuthSessionManager",
    "WsfeClient",
]
