"""
Reconciliation of imported documents against the buyer's records.

The supplier is resolved by CNPJ. Each item is then run through an ordered
list of matcher strategies; the first one that resolves to exactly one
material wins. Items that no strategy resolves stay unlinked and are
reported, never raised.
"""
import logging
from collections import namedtuple

from fuzzywuzzy import fuzz
from sqlalchemy import func, or_

from app.models import Material, Supplier, SupplierMaterial
from app.utils import normalize_cnpj

logger = logging.getLogger(__name__)

SUPPLIER_UNMATCHED = 'supplier_unmatched'
UNMATCHED = 'unmatched'

MATCHED_BY_MATERIAL_CODE = 'material_code'
MATCHED_BY_SUPPLIER_CODE = 'supplier_code'
MATCHED_BY_EAN = 'ean'
MATCHED_BY_MANUAL = 'manual'

MaterialMatch = namedtuple('MaterialMatch', ['material_id', 'matched_by'])


class MatchCandidates:
    """Lookup tables of material ids, keyed the way each matcher needs them."""

    def __init__(self, by_code=None, by_supplier_code=None, by_ean=None):
        self.by_code = by_code or {}
        self.by_supplier_code = by_supplier_code or {}
        self.by_ean = by_ean or {}

    @classmethod
    def for_document(cls, doc):
        codes = {item.product_code for item in doc.items if item.product_code}
        eans = {item.ean for item in doc.items if item.ean}

        by_code = {}
        by_ean = {}
        by_supplier_code = {}

        if codes:
            for material in Material.query.filter(Material.code.in_(codes)).all():
                by_code.setdefault(material.code, set()).add(material.id)

        if eans:
            for material in Material.query.filter(Material.ean.in_(eans)).all():
                by_ean.setdefault(material.ean, set()).add(material.id)

        if codes and doc.supplier_id:
            learned = SupplierMaterial.query.filter(
                SupplierMaterial.supplier_id == doc.supplier_id,
                SupplierMaterial.supplier_code.in_(codes),
            ).all()
            for mapping in learned:
                by_supplier_code.setdefault(mapping.supplier_code, set()).add(mapping.material_id)

        return cls(by_code=by_code, by_supplier_code=by_supplier_code, by_ean=by_ean)


def _single(material_ids, matched_by):
    # More than one material for the same key is ambiguous: no match
    if material_ids and len(material_ids) == 1:
        return MaterialMatch(next(iter(material_ids)), matched_by)
    return None


def match_by_material_code(item, candidates):
    if not item.product_code:
        return None
    return _single(candidates.by_code.get(item.product_code), MATCHED_BY_MATERIAL_CODE)


def match_by_supplier_code(item, candidates):
    if not item.product_code:
        return None
    return _single(candidates.by_supplier_code.get(item.product_code), MATCHED_BY_SUPPLIER_CODE)


def match_by_ean(item, candidates):
    if not item.ean:
        return None
    return _single(candidates.by_ean.get(item.ean), MATCHED_BY_EAN)


# Priority order
MATCHERS = (match_by_material_code, match_by_supplier_code, match_by_ean)


class ReconciliationReport:

    def __init__(self, document_id):
        self.document_id = document_id
        self.supplier_id = None
        self.supplier_matched = False
        self.items = []
        self.conditions = []

    @property
    def items_total(self):
        return len(self.items)

    @property
    def items_linked(self):
        return sum(1 for entry in self.items if entry['material_id'] is not None)

    @property
    def items_unmatched(self):
        return self.items_total - self.items_linked

    def add_item(self, item, match=None, previously_linked=False):
        self.items.append({
            'item_id': item.id,
            'item_number': item.item_number,
            'product_code': item.product_code,
            'matched_by': match.matched_by if match else None,
            'material_id': match.material_id if match else None,
            'previously_linked': previously_linked,
        })
        if match is None:
            self.conditions.append({
                'condition': UNMATCHED,
                'item_id': item.id,
                'item_number': item.item_number,
                'product_code': item.product_code,
            })

    def to_dict(self):
        return {
            'document_id': self.document_id,
            'supplier_id': self.supplier_id,
            'supplier_matched': self.supplier_matched,
            'items_total': self.items_total,
            'items_linked': self.items_linked,
            'items_unmatched': self.items_unmatched,
            'items': self.items,
            'conditions': self.conditions,
        }


def suppliers_with_cnpj(cnpj):
    """Every supplier whose stored CNPJ has the same digits."""
    cnpj = normalize_cnpj(cnpj)
    if not cnpj:
        return []
    digits_only = func.replace(func.replace(func.replace(Supplier.cnpj, '.', ''), '/', ''), '-', '')
    return Supplier.query.filter(digits_only == cnpj).order_by(Supplier.id).all()


def find_supplier_by_cnpj(cnpj):
    """Supplier whose CNPJ has the same digits, or None (also when ambiguous)."""
    suppliers = suppliers_with_cnpj(cnpj)
    if len(suppliers) > 1:
        logger.warning(f"CNPJ {normalize_cnpj(cnpj)} matches {len(suppliers)} suppliers, leaving document unlinked")
        return None
    return suppliers[0] if suppliers else None


def reconcile(doc):
    """
    Link the document's supplier and items. Mutates ``doc`` and its items in
    the current session; the caller commits. Never touches ``doc.status``.
    """
    report = ReconciliationReport(doc.id)

    if doc.supplier_id is None:
        supplier = find_supplier_by_cnpj(doc.supplier_cnpj)
        if supplier is not None:
            doc.supplier_id = supplier.id
            doc.supplier = supplier

    report.supplier_id = doc.supplier_id
    report.supplier_matched = doc.supplier_id is not None
    if not report.supplier_matched:
        report.conditions.append({'condition': SUPPLIER_UNMATCHED, 'supplier_cnpj': doc.supplier_cnpj})

    candidates = MatchCandidates.for_document(doc)

    for item in doc.items:
        if item.linked_material_id is not None:
            existing = MaterialMatch(item.linked_material_id, item.matched_by or MATCHED_BY_MANUAL)
            report.add_item(item, existing, previously_linked=True)
            continue

        match = None
        for matcher in MATCHERS:
            match = matcher(item, candidates)
            if match is not None:
                break

        if match is not None:
            item.linked_material_id = match.material_id
            item.matched_by = match.matched_by
        else:
            logger.debug(f"Item {item.item_number} ({item.product_code}) of {doc.access_key} not matched")
        report.add_item(item, match)

    logger.info(
        f"Reconciled {doc.access_key}: {report.items_linked}/{report.items_total} items linked, "
        f"supplier {'matched' if report.supplier_matched else 'unmatched'}"
    )
    return report


SUGGESTION_POOL_LIMIT = 500


def suggest_materials(item, limit=5):
    """
    Ranked candidates for manual linking of ``item``. Nothing is applied.

    Sources: the supplier code learned for the document's supplier, materials
    sharing the item's NCM, and materials whose description shares a word
    with the item's, scored by fuzzy similarity.
    """
    suggestions = {}

    def add(material, score, reason):
        entry = suggestions.get(material.id)
        if entry is None:
            entry = suggestions[material.id] = {
                'material_id': material.id,
                'code': material.code,
                'description': material.description,
                'ean': material.ean,
                'ncm': material.ncm,
                'score': 0,
                'reasons': [],
            }
        entry['score'] = max(entry['score'], score)
        if reason not in entry['reasons']:
            entry['reasons'].append(reason)

    document = item.document
    if document is not None and document.supplier_id and item.product_code:
        learned = SupplierMaterial.query.filter_by(
            supplier_id=document.supplier_id, supplier_code=item.product_code
        ).all()
        for mapping in learned:
            add(mapping.material, 100, MATCHED_BY_SUPPLIER_CODE)

    description = item.description or ''
    terms = [term for term in description.split() if len(term) > 3][:3]

    pool = []
    if terms:
        pool.extend(
            Material.query
            .filter(or_(*[Material.description.ilike(f'%{term}%') for term in terms]))
            .limit(SUGGESTION_POOL_LIMIT)
            .all()
        )
    if item.ncm:
        pool.extend(Material.query.filter_by(ncm=item.ncm).limit(SUGGESTION_POOL_LIMIT).all())

    for material in pool:
        score = fuzz.token_set_ratio(description.upper(), (material.description or '').upper())
        if item.ncm and material.ncm == item.ncm:
            add(material, score, 'ncm')
        if score >= 50:
            add(material, score, 'description')

    ranked = sorted(suggestions.values(), key=lambda entry: (-entry['score'], entry['code']))
    return ranked[:limit]
