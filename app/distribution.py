"""
Pending distribution tracker.

Keeps one ``PendingNfe`` per access key announced by the SEFAZ distribution
feed (DistDFe) and advances the per-company NSU cursor.
"""
import logging
import xml.etree.ElementTree as ET
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app import db
from app.access_key import is_valid_access_key, validate_access_key
from app.errors import CursorConflictError, ExternalServiceError, MalformedKeyError, NotFoundError
from app.importer import import_nfe_xml
from app.manifestation import current_status
from app.models import DistributionCursor, PendingNfe
from app.sefaz import SCHEMA_FULL, SCHEMA_SUMMARY
from app.status import ManifestationStatus
from app.utils import only_digits, parse_nfe_datetime

logger = logging.getLogger(__name__)

STATUS_ALL = 'ALL'

SUMMARY_FIELDS = ('supplier_cnpj', 'supplier_name', 'issue_date', 'total_value')


def _text(root, path):
    elem = root.find(path)
    if elem is None or elem.text is None:
        return None
    return elem.text.strip() or None


def extract_summary(raw_xml, schema):
    """
    Access key and listing fields of a resNFe or procNFe payload.
    Returns (access_key, summary); access_key is None when not found.
    """
    try:
        root = ET.fromstring(raw_xml)
    except ET.ParseError as e:
        logger.warning(f"Unparsable {schema} payload skipped: {e}")
        return None, {}

    if schema == SCHEMA_SUMMARY:
        access_key = _text(root, './/{*}chNFe')
        cnpj = _text(root, './/{*}CNPJ')
        name = _text(root, './/{*}xNome')
        issued = _text(root, './/{*}dhEmi')
        total = _text(root, './/{*}vNF')
    else:
        inf_nfe = root.find('.//{*}infNFe')
        id_attr = inf_nfe.attrib.get('Id', '') if inf_nfe is not None else ''
        access_key = (id_attr[3:] if id_attr.startswith('NFe') else id_attr) or _text(root, './/{*}chNFe')
        cnpj = _text(root, './/{*}emit/{*}CNPJ')
        name = _text(root, './/{*}emit/{*}xNome')
        issued = _text(root, './/{*}ide/{*}dhEmi') or _text(root, './/{*}ide/{*}dEmi')
        total = _text(root, './/{*}total/{*}ICMSTot/{*}vNF')

    summary = {
        'supplier_cnpj': only_digits(cnpj) or None,
        'supplier_name': name,
        'issue_date': None,
        'total_value': None,
    }
    if issued:
        try:
            summary['issue_date'] = parse_nfe_datetime(issued)
        except ValueError:
            logger.debug(f"Ignoring unparsable dhEmi {issued!r} in {schema} payload")
    if total:
        try:
            summary['total_value'] = float(total)
        except ValueError:
            logger.debug(f"Ignoring unparsable vNF {total!r} in {schema} payload")
    return access_key, summary


def _apply(pending, nsu, raw_xml, schema, summary):
    pending.nsu = nsu
    # A later summary never replaces a stored full document
    if not (pending.schema == SCHEMA_FULL and schema == SCHEMA_SUMMARY):
        pending.raw_xml = raw_xml
        if schema:
            pending.schema = schema
    for field in SUMMARY_FIELDS:
        value = (summary or {}).get(field)
        if value is not None:
            setattr(pending, field, value)


def record(access_key, nsu, raw_xml, company=None, summary=None, schema=None):
    """
    Create-if-absent by access key. A new row starts at the status the
    manifestation log already holds for the key. A redelivery only replaces
    the stored payload when its NSU is greater than the stored one, and a
    resNFe never replaces a stored procNFe.

    Flushes but does not commit.
    """
    validation = validate_access_key(access_key)
    if not validation.valid:
        raise MalformedKeyError(validation.message, [validation.reason])

    nsu = int(nsu)
    pending = PendingNfe.query.filter_by(access_key=access_key).first()

    if pending is None:
        pending = PendingNfe(
            access_key=access_key,
            company_id=company.id if company is not None else None,
            status=current_status(access_key).value,
        )
        _apply(pending, nsu, raw_xml, schema, summary)
        try:
            with db.session.begin_nested():
                db.session.add(pending)
            logger.info(f"Recorded pending NFe {access_key} (NSU {nsu})")
            return pending
        except IntegrityError:
            # Another writer created it first; fall through to the update rule
            pending = PendingNfe.query.filter_by(access_key=access_key).one()

    if nsu > pending.nsu:
        _apply(pending, nsu, raw_xml, schema, summary)
        db.session.flush()
        logger.info(f"Updated pending NFe {access_key} to NSU {nsu}")
    else:
        logger.debug(f"Ignoring redelivery of {access_key} with NSU {nsu} (stored {pending.nsu})")
    return pending


def list_by_status(status=STATUS_ALL, company_id=None):
    query = PendingNfe.query
    if status and status != STATUS_ALL:
        query = query.filter(PendingNfe.status == ManifestationStatus(status).value)
    if company_id is not None:
        query = query.filter(PendingNfe.company_id == company_id)
    return query.order_by(PendingNfe.nsu.desc()).all()


def get(pending_id):
    pending = db.session.get(PendingNfe, pending_id)
    if pending is None:
        raise NotFoundError(f'pending NFe #{pending_id} not found')
    return pending


def delete(pending_id):
    pending = get(pending_id)
    access_key = pending.access_key
    db.session.delete(pending)
    db.session.commit()
    logger.info(f"Dismissed pending NFe {access_key}")


def _lock_cursor(company):
    cursor = (
        DistributionCursor.query
        .filter_by(company_id=company.id)
        .with_for_update()
        .first()
    )
    if cursor is None:
        cursor = DistributionCursor(company_id=company.id, last_nsu=0, max_nsu=0)
        db.session.add(cursor)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise CursorConflictError(f'distribution cursor of company #{company.id} is being created by another poll')
    return cursor


def poll_distribution(company, client, nsu=None):
    """
    Fetch one DistDFe page for ``company`` and record what it announces.

    The cursor only moves from the value read at the start; if another poll
    advanced it meanwhile, CursorConflictError is raised and nothing is
    recorded. Service failures leave the cursor untouched.
    """
    cnpj = only_digits(company.cnpj)
    if len(cnpj) != 14:
        raise NotFoundError(f'company #{company.id} has no valid CNPJ')

    cursor = _lock_cursor(company)
    stale_nsu = cursor.last_nsu
    start_nsu = stale_nsu if nsu is None else int(nsu)

    try:
        batch = client.fetch_distribution(cnpj, company.uf, start_nsu)
    except ExternalServiceError:
        db.session.rollback()
        raise

    # A replay from an explicit NSU never moves the cursor backwards
    cursor_nsu = max(stale_nsu, batch.last_nsu)
    result = db.session.execute(
        update(DistributionCursor)
        .where(DistributionCursor.id == cursor.id, DistributionCursor.last_nsu == stale_nsu)
        .values(last_nsu=cursor_nsu, max_nsu=max(cursor.max_nsu, batch.max_nsu), updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        logger.warning(f"Distribution cursor of company #{company.id} moved during poll from NSU {stale_nsu}")
        raise CursorConflictError(
            f'distribution cursor of company #{company.id} was advanced by another poll',
            [f'expected last_nsu {stale_nsu}'],
        )

    discovered = []
    skipped = 0
    for document in batch.documents:
        if document.schema not in (SCHEMA_SUMMARY, SCHEMA_FULL):
            skipped += 1
            continue
        access_key, summary = extract_summary(document.xml, document.schema)
        if not access_key or not is_valid_access_key(access_key):
            logger.warning(f"NSU {document.nsu} ({document.schema}) has no valid access key, skipped")
            skipped += 1
            continue
        discovered.append(record(access_key, document.nsu, document.xml, company=company,
                                 summary=summary, schema=document.schema))

    db.session.commit()

    logger.info(
        f"Company #{company.id} poll: {len(discovered)} documents recorded, {skipped} skipped, "
        f"page ended at NSU {batch.last_nsu}, cursor {stale_nsu} -> {cursor_nsu} (max {batch.max_nsu})"
    )
    return {
        'company_id': company.id,
        'status_code': batch.status_code,
        'status_message': batch.status_message,
        'previous_nsu': stale_nsu,
        'cursor_nsu': cursor_nsu,
        'last_nsu': batch.last_nsu,
        'max_nsu': batch.max_nsu,
        'has_more': batch.last_nsu < batch.max_nsu,
        'documents': discovered,
        'skipped': skipped,
    }


def _company_credentials(pending):
    company = pending.company
    if company is None or len(only_digits(company.cnpj)) != 14:
        raise NotFoundError(f'pending NFe {pending.access_key} has no company to fetch it for')
    return only_digits(company.cnpj), company.uf


def import_pending(pending_id, client):
    """
    Import the document behind a pending entry. When only the resNFe summary
    is stored, the full XML is fetched by access key first and kept on the
    pending row.
    """
    pending = get(pending_id)

    if pending.schema != SCHEMA_FULL:
        cnpj, uf = _company_credentials(pending)
        logger.info(f"Fetching full XML of {pending.access_key} before import")
        pending.raw_xml = client.fetch_by_key(cnpj, uf, pending.access_key)
        pending.schema = SCHEMA_FULL
        db.session.commit()

    return import_nfe_xml(pending.raw_xml)
