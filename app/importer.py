"""
Import gate: the only path that creates FiscalDocument rows.
"""
import logging
from collections import namedtuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app import db
from app.errors import DuplicateDocumentError, FiscalError
from app.models import FiscalDocument
from app.nfe_parser import parse_nfe_xml
from app.reconciliation import reconcile
from app.status import DocumentStatus

logger = logging.getLogger(__name__)


class ImportResult(namedtuple('ImportResult', [
    'id', 'access_key', 'document_number', 'supplier_name', 'total_value',
    'items_count', 'linked_items_count', 'supplier_matched', 'reconciliation',
])):

    @classmethod
    def from_document(cls, doc, report=None):
        return cls(
            id=doc.id,
            access_key=doc.access_key,
            document_number=doc.document_number,
            supplier_name=doc.supplier_name,
            total_value=doc.total_value,
            items_count=len(doc.items),
            linked_items_count=doc.linked_items_count,
            supplier_matched=doc.supplier_id is not None,
            reconciliation=report.to_dict() if report is not None else None,
        )

    def to_dict(self):
        return self._asdict()


def find_by_access_key(access_key):
    return FiscalDocument.query.filter_by(access_key=access_key).first()


def import_document(doc):
    """
    Persist a parsed document and its items in one transaction.

    Raises DuplicateDocumentError when the access key is already stored,
    including when a concurrent import wins the race on the unique
    constraint.
    """
    existing = find_by_access_key(doc.access_key)
    if existing is not None:
        logger.info(f"Duplicate NFe {doc.access_key}, already stored as #{existing.id}")
        raise DuplicateDocumentError(existing)

    doc.status = DocumentStatus.PENDING.value
    db.session.add(doc)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = find_by_access_key(doc.access_key)
        if existing is None:
            raise
        logger.info(f"Duplicate NFe {doc.access_key} lost the insert race to #{existing.id}")
        raise DuplicateDocumentError(existing)

    logger.info(f"Imported NFe {doc.access_key} as #{doc.id} with {len(doc.items)} items")
    return doc


def import_nfe_xml(xml_content):
    """Parse, store and reconcile one XML. Returns an ImportResult."""
    doc = import_document(parse_nfe_xml(xml_content))

    report = None
    try:
        report = reconcile(doc)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        report = None
        logger.error(f"Reconciliation of {doc.access_key} failed, document kept unlinked: {e}")

    return ImportResult.from_document(doc, report)


def import_batch(xml_contents):
    """Import each XML independently; one entry per input, in order."""
    results = []
    for index, xml_content in enumerate(xml_contents):
        try:
            result = import_nfe_xml(xml_content)
        except FiscalError as e:
            logger.warning(f"Batch entry {index} rejected: {e.code} {e.message}")
            results.append({'index': index, 'success': False, 'error': e.to_dict()})
            continue
        results.append({'index': index, 'success': True, 'document': result.to_dict()})

    imported = sum(1 for entry in results if entry['success'])
    logger.info(f"Batch import finished: {imported}/{len(results)} documents imported")
    return results
