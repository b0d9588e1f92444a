from sqlalchemy import update

from app import db
from app.errors import ExternalServiceError
from app.importer import import_nfe_xml
from app.models import Company, FiscalDocument, Material, PendingNfe
from app.tasks.reconcile_pending import get_documents_to_reconcile, reconcile_pending_documents
from app.tasks.sync_nfe import sync_all_companies, sync_company
from nfe_samples import build_access_key, build_nfe_xml, build_res_nfe_xml


def test_sync_company_drains_feed(company, sefaz):
    first_key = build_access_key()
    second_key = build_access_key(number='000012346')
    sefaz.add_batch(last_nsu=1, max_nsu=2, documents=[(1, 'resNFe', build_res_nfe_xml(first_key))])
    sefaz.add_batch(last_nsu=2, max_nsu=2, documents=[(2, 'resNFe', build_res_nfe_xml(second_key))])

    assert sync_company(company, sefaz) == 2
    assert [call[3] for call in sefaz.calls] == [0, 1]
    assert PendingNfe.query.count() == 2


def test_sync_company_respects_max_pages(company, sefaz):
    sefaz.add_batch(last_nsu=1, max_nsu=50, documents=[])
    sefaz.add_batch(last_nsu=2, max_nsu=50, documents=[])

    sync_company(company, sefaz, max_pages=1)
    assert len(sefaz.calls) == 1


def test_sync_all_companies_reports_failures(company, sefaz):
    db.session.add(Company(name='SEM CNPJ LTDA'))
    db.session.commit()

    def unreachable():
        raise ExternalServiceError('SEFAZ proxy unreachable: timeout')

    sefaz.on_fetch = unreachable
    stats = sync_all_companies(sefaz)

    assert stats['status'] == 'partial'
    assert stats['failed_companies'] == [company.id]
    assert stats['recorded'] == 0


def test_reconcile_pending_links_new_materials(app):
    doc_id = import_nfe_xml(build_nfe_xml()).id
    assert [doc.id for doc in get_documents_to_reconcile()] == [doc_id]

    db.session.add(Material(code='MAT-001', description='PARAFUSO SEXTAVADO M8'))
    db.session.commit()

    stats = reconcile_pending_documents(dry_run=True)
    assert stats['items_linked'] == 1
    assert db.session.get(FiscalDocument, doc_id).linked_items_count == 0

    stats = reconcile_pending_documents()
    assert stats['documents_checked'] == 1
    assert stats['documents_improved'] == 1
    assert db.session.get(FiscalDocument, doc_id).linked_items_count == 1


def test_processed_documents_are_not_reconciled(app):
    doc = db.session.get(FiscalDocument, import_nfe_xml(build_nfe_xml()).id)
    doc.status = 'PROCESSED'
    db.session.commit()
    assert get_documents_to_reconcile() == []


def test_sync_all_companies_continues_after_unexpected_error(company, sefaz):
    other = Company(name='FILIAL COMPRADORA SA', cnpj='11.222.333/0001-81', uf='MG')
    db.session.add(other)
    db.session.commit()
    sefaz.add_batch(last_nsu=3, max_nsu=3, documents=[(3, 'resNFe', build_res_nfe_xml(build_access_key()))])

    def malformed_answer_once():
        if len(sefaz.calls) == 1:
            raise KeyError('ultNSU')

    sefaz.on_fetch = malformed_answer_once
    stats = sync_all_companies(sefaz)

    assert stats['status'] == 'partial'
    assert stats['failed_companies'] == [company.id]
    assert stats['recorded'] == 1
    assert PendingNfe.query.one().company_id == other.id
    assert [call[1] for call in sefaz.calls] == ['98765432000110', '11222333000181']


def test_reconcile_skips_document_processed_meanwhile(app, monkeypatch):
    doc_id = import_nfe_xml(build_nfe_xml()).id
    db.session.add(Material(code='MAT-001', description='PARAFUSO SEXTAVADO M8'))
    db.session.commit()

    def listed_then_processed(days=30):
        documents = get_documents_to_reconcile(days)
        # Another worker finishes the document after it was listed
        db.session.execute(
            update(FiscalDocument)
            .where(FiscalDocument.id == doc_id)
            .values(status='PROCESSED')
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return documents

    monkeypatch.setattr('app.tasks.reconcile_pending.get_documents_to_reconcile', listed_then_processed)
    stats = reconcile_pending_documents()

    assert stats['skipped'] == 1
    assert stats['documents_checked'] == 0
    assert stats['items_linked'] == 0
    assert db.session.get(FiscalDocument, doc_id).linked_items_count == 0
