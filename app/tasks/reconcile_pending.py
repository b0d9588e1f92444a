"""
Script to re-run reconciliation on PENDING documents that still have
unlinked items or no supplier, e.g. after new materials, suppliers or
supplier codes were registered.
"""
import os
import sys
import logging
from datetime import datetime, timedelta

sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from app import create_app, db
from app.models import FiscalDocument, InvoiceItem
from app.reconciliation import reconcile
from app.status import DocumentStatus
from config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler()
    ]
)

try:
    os.makedirs(Config.NFE_LOG_DIR, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(Config.NFE_LOG_DIR, 'nfe_reconcile.log'))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
except OSError:
    pass

logger = logging.getLogger('nfe_reconcile')


def get_documents_to_reconcile(days=30):
    """PENDING documents created in the last N days with something left to link."""
    cutoff = datetime.now() - timedelta(days=days)
    unlinked_items = (
        InvoiceItem.query
        .filter(InvoiceItem.document_id == FiscalDocument.id,
                InvoiceItem.linked_material_id.is_(None))
        .exists()
    )
    return (
        FiscalDocument.query
        .filter(
            FiscalDocument.status == DocumentStatus.PENDING.value,
            FiscalDocument.created_at >= cutoff,
            or_(FiscalDocument.supplier_id.is_(None), unlinked_items),
        )
        .order_by(FiscalDocument.created_at)
        .all()
    )


def reconcile_pending_documents(days=30, dry_run=False):
    stats = {
        'documents_checked': 0,
        'documents_improved': 0,
        'items_linked': 0,
        'suppliers_linked': 0,
        'skipped': 0,
        'errors': 0,
    }

    document_ids = [doc.id for doc in get_documents_to_reconcile(days)]
    logger.info(f"Found {len(document_ids)} pending documents to reconcile (last {days} days)")

    for document_id in document_ids:
        doc = (
            FiscalDocument.query
            .filter_by(id=document_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if doc is None or doc.status != DocumentStatus.PENDING.value:
            logger.info(f"Document #{document_id} is no longer pending, skipped")
            stats['skipped'] += 1
            db.session.rollback()
            continue

        stats['documents_checked'] += 1
        linked_before = doc.linked_items_count
        had_supplier = doc.supplier_id is not None

        try:
            report = reconcile(doc)
            if dry_run:
                db.session.rollback()
            else:
                db.session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error reconciling document #{doc.id}: {str(e)}")
            stats['errors'] += 1
            db.session.rollback()
            continue

        new_items = report.items_linked - linked_before
        new_supplier = report.supplier_matched and not had_supplier
        if new_items or new_supplier:
            stats['documents_improved'] += 1
            stats['items_linked'] += new_items
            stats['suppliers_linked'] += int(new_supplier)
            logger.info(f"Document #{doc.id} ({doc.access_key}): {new_items} new items linked"
                        f"{', supplier linked' if new_supplier else ''}{' (dry run)' if dry_run else ''}")

    logger.info(f"Reconciliation completed. Stats: {stats}")
    return stats


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Re-run reconciliation on pending NFe documents')
    parser.add_argument('--days', type=int, default=30, help='Number of days to look back (default: 30)')
    parser.add_argument('--dry-run', action='store_true', help='Report what would be linked without saving')

    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        stats = reconcile_pending_documents(days=args.days, dry_run=args.dry_run)
    print(f"Reconciliation completed: {stats}")
