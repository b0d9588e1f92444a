"""
Script to poll the SEFAZ distribution feed (DistDFe) for every company.

Meant to run from cron. Each company gets one poll per page until the
cursor reaches maxNSU or --max-pages is hit.
"""
import os
import sys
import logging
import argparse

sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from app import create_app, db
from app.distribution import poll_distribution
from app.errors import FiscalError
from app.models import Company
from config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler()
    ]
)

# Try to add file handler if log directory exists
try:
    os.makedirs(Config.NFE_LOG_DIR, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(Config.NFE_LOG_DIR, 'nfe_sync.log'))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)
except OSError:
    pass

logger = logging.getLogger('nfe_sync')


def sync_company(company, client, max_pages=10):
    """Poll until the feed is drained. Returns the number of documents recorded."""
    recorded = 0
    for _ in range(max_pages):
        result = poll_distribution(company, client)
        recorded += len(result['documents'])
        if not result['has_more']:
            break
    return recorded


def sync_all_companies(client, max_pages=10):
    companies = Company.query.order_by(Company.id).all()
    if not companies:
        logger.warning("No companies found in the database")

    total = 0
    failed = []
    for company in companies:
        if not company.cnpj:
            logger.warning(f"Company {company.name} (#{company.id}) has no CNPJ")
            continue

        logger.info(f"Polling distribution for company {company.name} (CNPJ: {company.cnpj})")
        try:
            recorded = sync_company(company, client, max_pages=max_pages)
        except FiscalError as e:
            logger.error(f"Error polling company {company.name}: {e.code} {e.message}")
            failed.append(company.id)
            continue
        except Exception as e:
            db.session.rollback()
            logger.error(f"Unexpected error polling company {company.name}: {str(e)}")
            failed.append(company.id)
            continue

        logger.info(f"Company {company.name}: {recorded} documents recorded")
        total += recorded

    logger.info(f"Distribution sync completed. {total} documents recorded, {len(failed)} companies failed")
    return {
        'status': 'success' if not failed else 'partial',
        'recorded': total,
        'failed_companies': failed,
    }


def main():
    parser = argparse.ArgumentParser(description='Poll the SEFAZ distribution feed for every company')
    parser.add_argument('--max-pages', type=int, default=10, help='Maximum pages fetched per company')
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        return sync_all_companies(app.extensions['sefaz_client'], max_pages=args.max_pages)


if __name__ == "__main__":
    main()
