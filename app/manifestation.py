"""
Receiver manifestation (manifestação do destinatário).

State is looked up per access key, validated against the transition table
in ``app.status``, submitted to SEFAZ and only then recorded: one appended
``ManifestationEvent`` plus the ``PendingNfe`` status when the key is
tracked. Two submissions that race on the same status are settled by the
unique (access_key, from_status) constraint of the event log.
"""
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from app import db
from app.access_key import validate_access_key
from app.errors import ExternalServiceError, InvalidTransitionError, MalformedKeyError, NotFoundError
from app.models import Company, FiscalDocument, ManifestationEvent, PendingNfe
from app.status import EVENT_CODES, EVENT_TARGETS, ManifestationStatus, ManifestationType, check_manifestation
from app.utils import only_digits

logger = logging.getLogger(__name__)


def list_events(access_key):
    return (
        ManifestationEvent.query
        .filter_by(access_key=access_key)
        .order_by(ManifestationEvent.submitted_at, ManifestationEvent.id)
        .all()
    )


def append_event(access_key, event_type, from_status, receipt, justification=None, submitted_by=None):
    """The only write path of the event log."""
    event_type = ManifestationType(event_type)
    event = ManifestationEvent(
        access_key=access_key,
        event_type=event_type.value,
        event_code=EVENT_CODES[event_type],
        from_status=ManifestationStatus(from_status).value,
        justification=justification,
        protocol_number=receipt.protocol_number,
        status_code=receipt.status_code,
        status_message=receipt.status_message,
        submitted_by=submitted_by,
        submitted_at=datetime.now(),
    )
    db.session.add(event)
    return event


def current_status(access_key, pending=None):
    """PendingNfe status if tracked, else the outcome of the last event, else PENDING."""
    if pending is None:
        pending = PendingNfe.query.filter_by(access_key=access_key).first()
    if pending is not None:
        return ManifestationStatus(pending.status)

    last_event = (
        ManifestationEvent.query
        .filter_by(access_key=access_key)
        .order_by(ManifestationEvent.submitted_at.desc(), ManifestationEvent.id.desc())
        .first()
    )
    if last_event is not None:
        return EVENT_TARGETS[ManifestationType(last_event.event_type)]
    return ManifestationStatus.PENDING


def _find_company(access_key, pending, company):
    if company is not None:
        return company
    if pending is not None and pending.company is not None:
        return pending.company

    document = FiscalDocument.query.filter_by(access_key=access_key).first()
    if document is not None and document.recipient_cnpj:
        for candidate in Company.query.filter(Company.cnpj.isnot(None)).all():
            if only_digits(candidate.cnpj) == document.recipient_cnpj:
                return candidate

    raise NotFoundError(f'no receiving company found for access key {access_key}')


def submit_manifestation(access_key, event_type, justification, client, company=None, submitted_by=None):
    """
    Submit one manifestation event. Returns the appended ManifestationEvent.

    Validation failures and service failures leave everything untouched.
    """
    validation = validate_access_key(access_key)
    if not validation.valid:
        raise MalformedKeyError(validation.message, [validation.reason])

    event_type = ManifestationType(event_type)
    justification = (justification or '').strip() or None

    pending = (
        PendingNfe.query
        .filter_by(access_key=access_key)
        .with_for_update()
        .first()
    )
    status = current_status(access_key, pending)
    target = check_manifestation(status, event_type, justification)

    company = _find_company(access_key, pending, company)

    logger.info(f"Submitting {event_type.value} for {access_key} ({status.value} -> {target.value})")
    try:
        receipt = client.manifest(
            only_digits(company.cnpj),
            company.uf,
            access_key,
            EVENT_CODES[event_type],
            justification,
        )
    except ExternalServiceError as e:
        db.session.rollback()
        logger.error(f"Manifestation {event_type.value} for {access_key} failed: {e.message}")
        raise

    event = append_event(access_key, event_type, status, receipt, justification, submitted_by)
    if pending is not None:
        pending.status = target.value
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        _raise_lost_transition(access_key, status, event_type, justification)

    logger.info(f"Manifestation {event_type.value} for {access_key} registered, protocol {receipt.protocol_number}")
    return event


def _raise_lost_transition(access_key, status, event_type, justification):
    """Another submission already left ``status`` for this key; refuse against its outcome."""
    winner = ManifestationEvent.query.filter_by(access_key=access_key, from_status=status.value).one()
    winner_target = EVENT_TARGETS[ManifestationType(winner.event_type)]
    logger.warning(
        f"Concurrent manifestation on {access_key}: {winner.event_type} was recorded first, "
        f"{event_type.value} discarded"
    )
    check_manifestation(winner_target, event_type, justification)
    raise InvalidTransitionError(winner_target.value, EVENT_TARGETS[event_type].value)
