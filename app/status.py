"""
State machines of the NFe pipeline.

Two independent lifecycles share the access key value and nothing else:

* ``DocumentStatus`` - processing status of an imported ``FiscalDocument``.
* ``ManifestationStatus`` - receiver acknowledgement status of an access key
  towards SEFAZ, tracked on ``PendingNfe`` and in the event log.

Each one owns its transition table. Neither looks at the other.
"""
from datetime import datetime
from enum import Enum

from app.errors import (
    AlreadyTerminalError,
    InvalidTransitionError,
    JustificationRequiredError,
    ReasonRequiredError,
)


class DocumentStatus(str, Enum):
    PENDING = 'PENDING'
    PROCESSED = 'PROCESSED'
    REJECTED = 'REJECTED'
    CANCELLED = 'CANCELLED'


DOCUMENT_TRANSITIONS = {
    DocumentStatus.PENDING: {DocumentStatus.PROCESSED, DocumentStatus.REJECTED},
    DocumentStatus.PROCESSED: {DocumentStatus.CANCELLED},
    DocumentStatus.REJECTED: set(),
    DocumentStatus.CANCELLED: set(),
}

# Target states that can only be entered with a non-empty reason
DOCUMENT_REASON_FIELDS = {
    DocumentStatus.REJECTED: 'rejection_reason',
    DocumentStatus.CANCELLED: 'cancellation_reason',
}

DOCUMENT_TIMESTAMP_FIELDS = {
    DocumentStatus.PROCESSED: 'processed_at',
    DocumentStatus.REJECTED: 'rejected_at',
    DocumentStatus.CANCELLED: 'cancelled_at',
}


def can_transition_document(current, target):
    return DocumentStatus(target) in DOCUMENT_TRANSITIONS[DocumentStatus(current)]


def transition_document(doc, target, reason=None):
    """Move ``doc`` to ``target``; raise and leave it untouched otherwise."""
    current = DocumentStatus(doc.status)
    target = DocumentStatus(target)

    if target not in DOCUMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)

    reason_field = DOCUMENT_REASON_FIELDS.get(target)
    if reason_field:
        reason = (reason or '').strip()
        if not reason:
            raise ReasonRequiredError(f'a reason is required to move a document to {target.value}')
        setattr(doc, reason_field, reason)

    doc.status = target.value
    setattr(doc, DOCUMENT_TIMESTAMP_FIELDS[target], datetime.now())
    return doc


class ManifestationStatus(str, Enum):
    PENDING = 'PENDING'
    CIENCIA = 'CIENCIA'
    CONFIRMADA = 'CONFIRMADA'
    DESCONHECIDA = 'DESCONHECIDA'
    NAO_REALIZADA = 'NAO_REALIZADA'


class ManifestationType(str, Enum):
    CIENCIA = 'CIENCIA'
    CONFIRMACAO = 'CONFIRMACAO'
    DESCONHECIMENTO = 'DESCONHECIMENTO'
    NAO_REALIZADA = 'NAO_REALIZADA'


# SEFAZ event codes (tpEvento)
EVENT_CODES = {
    ManifestationType.CONFIRMACAO: '210200',
    ManifestationType.CIENCIA: '210210',
    ManifestationType.DESCONHECIMENTO: '210220',
    ManifestationType.NAO_REALIZADA: '210240',
}

EVENT_TARGETS = {
    ManifestationType.CIENCIA: ManifestationStatus.CIENCIA,
    ManifestationType.CONFIRMACAO: ManifestationStatus.CONFIRMADA,
    ManifestationType.DESCONHECIMENTO: ManifestationStatus.DESCONHECIDA,
    ManifestationType.NAO_REALIZADA: ManifestationStatus.NAO_REALIZADA,
}

JUSTIFICATION_REQUIRED = {ManifestationType.DESCONHECIMENTO, ManifestationType.NAO_REALIZADA}

MANIFESTATION_TERMINAL = {
    ManifestationStatus.CONFIRMADA,
    ManifestationStatus.DESCONHECIDA,
    ManifestationStatus.NAO_REALIZADA,
}

MANIFESTATION_TRANSITIONS = {
    ManifestationStatus.PENDING: {
        ManifestationStatus.CIENCIA,
        ManifestationStatus.CONFIRMADA,
        ManifestationStatus.DESCONHECIDA,
        ManifestationStatus.NAO_REALIZADA,
    },
    ManifestationStatus.CIENCIA: set(MANIFESTATION_TERMINAL),
    ManifestationStatus.CONFIRMADA: set(),
    ManifestationStatus.DESCONHECIDA: set(),
    ManifestationStatus.NAO_REALIZADA: set(),
}


def check_manifestation(current, event_type, justification=None):
    """Validate a submission and return the status it leads to.

    Does not mutate anything; the caller applies the result only after the
    external service accepted the event.
    """
    current = ManifestationStatus(current)
    event_type = ManifestationType(event_type)
    target = EVENT_TARGETS[event_type]

    if current in MANIFESTATION_TERMINAL:
        raise AlreadyTerminalError(current.value, event_type.value)

    if target not in MANIFESTATION_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)

    if event_type in JUSTIFICATION_REQUIRED and not (justification or '').strip():
        raise JustificationRequiredError(f'{event_type.value} requires a justification')

    return target
