import pytest

from app import db
from app.importer import import_document
from app.models import Material, Supplier, SupplierMaterial
from app.nfe_parser import parse_nfe_xml
from app.reconciliation import (
    MatchCandidates,
    find_supplier_by_cnpj,
    match_by_ean,
    match_by_material_code,
    match_by_supplier_code,
    reconcile,
    suggest_materials,
)
from app.models import InvoiceItem
from nfe_samples import SUPPLIER_CNPJ, build_nfe_xml

THREE_ITEMS = [
    {'code': 'MAT-001', 'description': 'PARAFUSO SEXTAVADO M8', 'qty': '10', 'unit_value': '1.5', 'total': '15.00'},
    {'code': 'MAT-002', 'description': 'ARRUELA LISA M8', 'qty': '20', 'unit_value': '0.25', 'total': '5.00'},
    {'code': 'XYZ-999', 'description': 'PORCA AUTOTRAVANTE M8', 'ncm': '73181600', 'qty': '5', 'unit_value': '2', 'total': '10.00'},
]


def _stored(items=THREE_ITEMS, **kwargs):
    total = '%.2f' % sum(float(item['total']) for item in items)
    return import_document(parse_nfe_xml(build_nfe_xml(items=items, total=total, **kwargs)))


def test_two_of_three_items_linked(app, materials):
    doc = _stored()
    report = reconcile(doc)

    assert report.items_total == 3
    assert report.items_linked == 2
    assert report.items_unmatched == 1
    assert [entry['matched_by'] for entry in report.items] == ['material_code', 'material_code', None]
    unmatched = [entry for entry in report.conditions if entry['condition'] == 'unmatched']
    assert [entry['product_code'] for entry in unmatched] == ['XYZ-999']


def test_report_never_changes_status(app, materials, supplier):
    doc = _stored()
    reconcile(doc)
    db.session.commit()
    assert doc.status == 'PENDING'


def test_supplier_linked_by_cnpj_digits(app, supplier):
    doc = _stored()
    report = reconcile(doc)

    assert report.supplier_matched is True
    assert doc.supplier_id == supplier.id
    assert not [entry for entry in report.conditions if entry['condition'] == 'supplier_unmatched']


def test_unknown_supplier_is_reported_not_raised(app):
    doc = _stored()
    report = reconcile(doc)

    assert report.supplier_matched is False
    assert doc.supplier_id is None
    assert {'condition': 'supplier_unmatched', 'supplier_cnpj': SUPPLIER_CNPJ} in report.conditions


def test_ambiguous_supplier_cnpj_is_unmatched(app):
    db.session.add_all([
        Supplier(name='MATRIZ', cnpj='12345678000190'),
        Supplier(name='MATRIZ DUPLICADA', cnpj='12.345.678/0001-90'),
    ])
    db.session.commit()
    assert find_supplier_by_cnpj(SUPPLIER_CNPJ) is None


def test_manual_supplier_is_kept(app, supplier):
    other = Supplier(name='OUTRO', cnpj='00.000.000/0001-91')
    db.session.add(other)
    db.session.commit()
    doc = _stored()
    doc.supplier_id = other.id
    db.session.commit()

    report = reconcile(doc)
    assert doc.supplier_id == other.id
    assert report.supplier_matched is True


def test_ean_match(app):
    material = Material(code='INT-77', description='PORCA M8', ean='7890000000017')
    db.session.add(material)
    db.session.commit()
    items = [{'code': 'SUP-77', 'description': 'PORCA M8', 'ean': '7890000000017', 'qty': '1', 'unit_value': '3', 'total': '3.00'}]

    doc = _stored(items=items)
    report = reconcile(doc)

    assert report.items_linked == 1
    assert doc.items[0].linked_material_id == material.id
    assert doc.items[0].matched_by == 'ean'


def test_ambiguous_ean_is_left_unlinked(app):
    db.session.add_all([
        Material(code='INT-1', description='PORCA M8 A', ean='7890000000017'),
        Material(code='INT-2', description='PORCA M8 B', ean='7890000000017'),
    ])
    db.session.commit()
    items = [{'code': 'SUP-77', 'description': 'PORCA M8', 'ean': '7890000000017', 'qty': '1', 'unit_value': '3', 'total': '3.00'}]

    doc = _stored(items=items)
    report = reconcile(doc)

    assert report.items_linked == 0
    assert doc.items[0].linked_material_id is None


def test_learned_supplier_code_match(app, supplier):
    material = Material(code='INT-99', description='PORCA AUTOTRAVANTE M8')
    db.session.add(material)
    db.session.commit()
    db.session.add(SupplierMaterial(supplier_id=supplier.id, material_id=material.id, supplier_code='XYZ-999'))
    db.session.commit()

    doc = _stored()
    report = reconcile(doc)

    linked = {entry['product_code']: entry for entry in report.items}
    assert linked['XYZ-999']['material_id'] == material.id
    assert linked['XYZ-999']['matched_by'] == 'supplier_code'


def test_material_code_has_priority_over_ean(app):
    by_code = Material(code='MAT-001', description='PARAFUSO')
    by_ean = Material(code='OTHER', description='PARAFUSO OUTRO', ean='7891234567895')
    db.session.add_all([by_code, by_ean])
    db.session.commit()
    items = [{'code': 'MAT-001', 'description': 'PARAFUSO', 'ean': '7891234567895', 'qty': '1', 'unit_value': '1', 'total': '1.00'}]

    doc = _stored(items=items)
    reconcile(doc)
    assert doc.items[0].linked_material_id == by_code.id
    assert doc.items[0].matched_by == 'material_code'


def test_already_linked_items_are_untouched(app, materials):
    screw, washer = materials
    doc = _stored()
    doc.items[2].linked_material_id = washer.id
    doc.items[2].matched_by = 'manual'
    db.session.commit()

    report = reconcile(doc)

    assert report.items_linked == 3
    assert doc.items[2].linked_material_id == washer.id
    assert doc.items[2].matched_by == 'manual'
    assert report.items[2]['previously_linked'] is True


def test_reconcile_twice_is_stable(app, materials):
    doc = _stored()
    first = reconcile(doc).to_dict()
    db.session.commit()
    second = reconcile(doc).to_dict()

    assert first['items_linked'] == second['items_linked'] == 2
    assert first['items_unmatched'] == second['items_unmatched'] == 1


def test_matchers_are_pure_functions():
    item = InvoiceItem(product_code='A1', ean='789')
    candidates = MatchCandidates(by_code={'A1': {10}}, by_supplier_code={'A1': {20}}, by_ean={'789': {30, 31}})

    assert match_by_material_code(item, candidates) == (10, 'material_code')
    assert match_by_supplier_code(item, candidates) == (20, 'supplier_code')
    assert match_by_ean(item, candidates) is None
    assert match_by_ean(InvoiceItem(product_code='A1', ean=None), candidates) is None


def test_suggest_materials_ranks_candidates(app, supplier):
    exact = Material(code='INT-10', description='PORCA AUTOTRAVANTE M8 ZINCADA', ncm='73181600')
    same_ncm = Material(code='INT-11', description='REBITE POP', ncm='73181600')
    unrelated = Material(code='INT-12', description='LUVA DE RASPA')
    db.session.add_all([exact, same_ncm, unrelated])
    db.session.commit()

    doc = _stored()
    suggestions = suggest_materials(doc.items[2], limit=5)

    codes = [entry['code'] for entry in suggestions]
    assert codes[0] == 'INT-10'
    assert 'INT-11' in codes
    assert 'INT-12' not in codes
    assert 'ncm' in suggestions[codes.index('INT-11')]['reasons']
    # Suggestions are never applied
    assert doc.items[2].linked_material_id is None


def test_suggest_materials_prefers_learned_code(app, supplier):
    learned = Material(code='INT-20', description='ITEM QUALQUER')
    db.session.add(learned)
    db.session.commit()
    db.session.add(SupplierMaterial(supplier_id=supplier.id, material_id=learned.id, supplier_code='XYZ-999'))
    db.session.commit()

    doc = _stored()
    doc.supplier_id = supplier.id
    db.session.commit()

    suggestions = suggest_materials(doc.items[2])
    assert suggestions[0]['code'] == 'INT-20'
    assert suggestions[0]['score'] == 100
    assert suggestions[0]['reasons'] == ['supplier_code']


@pytest.mark.parametrize('cnpj', [None, '', '123'])
def test_find_supplier_requires_full_cnpj(app, supplier, cnpj):
    assert find_supplier_by_cnpj(cnpj) is None
