"""Codes shared with the authority (WSFEv1 / WSAA / padrón)."""

from __future__ import annotations

from typing import Dict
from zoneinfo import ZoneInfo

# Target services for the access request
SERVICE_WSFE = "wsfe"
SERVICE_PADRON_A13 = "ws_sr_padron_a13"
SERVICE_PADRON_A5 = "ws_sr_constancia_inscripcion"

# Document types (CbteTipo)
INVOICE_A = 1
INVOICE_B = 6
INVOICE_C = 11
CREDIT_NOTE_A = 3
CREDIT_NOTE_B = 8
CREDIT_NOTE_C = 13

INVOICE_TYPES = (INVOICE_A, INVOICE_B, INVOICE_C)
CREDIT_NOTE_TYPES = (CREDIT_NOTE_A, CREDIT_NOTE_B, CREDIT_NOTE_C)

DOCUMENT_TYPE_NAMES: Dict[int, str] = {
    INVOICE_A: "Factura A",
    INVOICE_B: "Factura B",
    INVOICE_C: "Factura C",
    CREDIT_NOTE_A: "Nota de Crédito A",
    CREDIT_NOTE_B: "Nota de Crédito B",
    CREDIT_NOTE_C: "Nota de Crédito C",
}

CREDIT_NOTE_FOR: Dict[int, int] = {
    INVOICE_A: CREDIT_NOTE_A,
    INVOICE_B: CREDIT_NOTE_B,
    INVOICE_C: CREDIT_NOTE_C,
}

# Document types that carry no tax breakdown
SIMPLIFIED_TYPES = (INVOICE_C, CREDIT_NOTE_C)

# Buyer identity (DocTipo)
DOC_CUIT = 80
DOC_CUIL = 86
DOC_DNI = 96
DOC_FINAL_CONSUMER = 99
BUYER_DOC_TYPES = (DOC_CUIT, DOC_CUIL, DOC_DNI, DOC_FINAL_CONSUMER)

# Buyer fiscal condition (CondicionIVAReceptorId)
IVA_REGISTERED = 1
IVA_EXEMPT = 4
IVA_FINAL_CONSUMER = 5
IVA_SIMPLIFIED = 6

FISCAL_CONDITION_CODES: Dict[str, int] = {
    "responsable_inscripto": IVA_REGISTERED,
    "exento": IVA_EXEMPT,
    "consumidor_final": IVA_FINAL_CONSUMER,
    "monotributista": IVA_SIMPLIFIED,
}

# Issuer regimes
REGIME_SIMPLIFIED = "monotributista"
REGIME_FULL = "responsable_inscripto"
REGIMES = (REGIME_SIMPLIFIED, REGIME_FULL)

# Request constants
CONCEPT_PRODUCTS = 1
CURRENCY_PESOS = "PES"
VAT_21_ID = 5

# Observation raised when CbteDesde is not the next number to authorize
OBS_NUMBER_NOT_NEXT = "10016"

RESULT_APPROVED = "A"

STATUS_ISSUED = "issued"
STATUS_VOIDED = "voided"


def document_type_name(document_type: int) -> str:
    return DOCUMENT_TYPE_NAMES.get(document_type, f"Comprobante {document_type}")


def format_document_number(sales_point: int, number: int) -> str:
    return f"{sales_point:05d}-{number:08d}"


def fiscal_condition_code(condition: str | int | None) -> int:
    """Map a condition name (or code) to CondicionIVAReceptorId."""

    if condition is None:
        return IVA_FINAL_CONSUMER
    if isinstance(condition, int):
        return condition
    condition = condition.strip().lower()
    if condition.isdigit():
        return int(condition)
    return FISCAL_CONDITION_CODES.get(condition, IVA_FINAL_CONSUMER)


# Document dates are the authority's calendar day
AUTHORITY_TZ = ZoneInfo("America/Argentina/Buenos_Aires")

FINAL_CONSUMER_NAME = "Consumidor Final"
