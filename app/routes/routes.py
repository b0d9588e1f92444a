import logging
from datetime import datetime, time, timedelta

from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required, current_user
from marshmallow import ValidationError
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from app import db
from app import distribution
from app.access_key import validate_access_key
from app.errors import FiscalError, MalformedKeyError, NotFoundError, UnlinkedItemsError
from app.importer import find_by_access_key, import_batch, import_nfe_xml
from app.manifestation import current_status, list_events, submit_manifestation
from app.models import Company, FiscalDocument, InvoiceItem, Material, Supplier, SupplierMaterial
from app.reconciliation import MATCHED_BY_MANUAL, reconcile, suggest_materials, suppliers_with_cnpj
from app.schemas import (
    BatchImportRequestSchema,
    CreateMaterialRequestSchema,
    DocumentListArgsSchema,
    FiscalDocumentDetailSchema,
    FiscalDocumentSchema,
    FindOrCreateSupplierRequestSchema,
    ImportRequestSchema,
    InvoiceItemSchema,
    LinkMaterialRequestSchema,
    LinkSupplierRequestSchema,
    ManifestationEventSchema,
    ManifestRequestSchema,
    MaterialSchema,
    PendingListArgsSchema,
    PendingNfeSchema,
    PollRequestSchema,
    ProcessRequestSchema,
    ReasonRequestSchema,
    SuggestionArgsSchema,
    SupplierSchema,
)
from app.status import DocumentStatus, transition_document
from app.utils import month_bounds, only_digits


bp = Blueprint('api', __name__)
logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'xml'}


@bp.errorhandler(FiscalError)
def handle_fiscal_error(error):
    return jsonify(error.to_dict()), error.status_code


@bp.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({
        'error': 'VALIDATION_ERROR',
        'message': 'invalid request',
        'details': error.messages,
    }), 400


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _json_body():
    return request.get_json(silent=True) or {}


def _sefaz_client():
    return current_app.extensions['sefaz_client']


def _current_username():
    if getattr(current_user, 'is_authenticated', False):
        return current_user.username
    return None


def _get_or_404(model, object_id, label):
    obj = db.session.get(model, object_id)
    if obj is None:
        raise NotFoundError(f'{label} #{object_id} not found')
    return obj


def _locked_document(document_id):
    """Load a document with a row lock for read-modify-write sequences."""
    doc = (
        FiscalDocument.query
        .filter_by(id=document_id)
        .with_for_update()
        .first()
    )
    if doc is None:
        raise NotFoundError(f'document #{document_id} not found')
    return doc


def _document_counters():
    start, end = month_bounds()
    processed_this_month = FiscalDocument.query.filter(
        FiscalDocument.status == DocumentStatus.PROCESSED.value,
        FiscalDocument.processed_at >= start,
        FiscalDocument.processed_at < end,
    )
    total_value = (
        processed_this_month
        .with_entities(func.coalesce(func.sum(FiscalDocument.total_value), 0.0))
        .scalar()
    )
    return {
        'pending': FiscalDocument.query.filter_by(status=DocumentStatus.PENDING.value).count(),
        'processed_this_month': processed_this_month.count(),
        'rejected': FiscalDocument.query.filter_by(status=DocumentStatus.REJECTED.value).count(),
        'cancelled': FiscalDocument.query.filter_by(status=DocumentStatus.CANCELLED.value).count(),
        'total_value_this_month': float(total_value or 0),
    }


# Documents

@bp.route('/nfe/import', methods=['POST'])
@login_required
def import_nfe():
    """Import one NFe, sent as JSON ``xml_content`` or as a multipart ``file``."""
    if 'file' in request.files:
        file = request.files['file']
        if not file.filename or not allowed_file(file.filename):
            raise ValidationError({'file': ['an .xml file is required']})
        xml_content = file.read()
    else:
        xml_content = ImportRequestSchema().load(_json_body())['xml_content']

    result = import_nfe_xml(xml_content)
    return jsonify(result.to_dict()), 201


@bp.route('/nfe/import_batch', methods=['POST'])
@login_required
def import_nfe_batch():
    files = request.files.getlist('files')
    if files:
        invalid = [file.filename for file in files if not file.filename or not allowed_file(file.filename)]
        if invalid:
            raise ValidationError({'files': [f'not an .xml file: {name}' for name in invalid]})
        xml_contents = [file.read() for file in files]
    else:
        xml_contents = BatchImportRequestSchema().load(_json_body())['xml_contents']

    results = import_batch(xml_contents)
    imported = sum(1 for entry in results if entry['success'])
    return jsonify({
        'imported': imported,
        'failed': len(results) - imported,
        'results': results,
    }), 200


@bp.route('/nfe', methods=['GET'])
@login_required
def list_nfe():
    args = DocumentListArgsSchema().load(request.args)

    query = FiscalDocument.query
    if args['status'] != 'ALL':
        query = query.filter(FiscalDocument.status == args['status'])
    if args['supplier_id']:
        query = query.filter(FiscalDocument.supplier_id == args['supplier_id'])
    if args['start_date']:
        query = query.filter(FiscalDocument.issue_date >= datetime.combine(args['start_date'], time.min))
    if args['end_date']:
        query = query.filter(FiscalDocument.issue_date < datetime.combine(args['end_date'] + timedelta(days=1), time.min))
    if args['search']:
        term = args['search'].strip()
        pattern = f'%{term}%'
        conditions = [
            FiscalDocument.document_number.ilike(pattern),
            FiscalDocument.supplier_name.ilike(pattern),
        ]
        digits = only_digits(term)
        if digits:
            conditions.append(FiscalDocument.access_key.like(f'%{digits}%'))
            conditions.append(FiscalDocument.supplier_cnpj.like(f'%{digits}%'))
        query = query.filter(or_(*conditions))

    pagination = (
        query
        .order_by(FiscalDocument.issue_date.desc(), FiscalDocument.id.desc())
        .paginate(page=args['page'], per_page=args['limit'], error_out=False)
    )

    return jsonify({
        'items': FiscalDocumentSchema(many=True).dump(pagination.items),
        'total': pagination.total,
        'page': args['page'],
        'limit': args['limit'],
        'pages': pagination.pages,
        'counters': _document_counters(),
    }), 200


@bp.route('/nfe/stats', methods=['GET'])
@login_required
def nfe_stats():
    return jsonify(_document_counters()), 200


@bp.route('/nfe/key/<access_key>', methods=['GET'])
@login_required
def get_nfe_by_key(access_key):
    validation = validate_access_key(access_key)
    if not validation.valid:
        raise MalformedKeyError(validation.message, [validation.reason])

    doc = find_by_access_key(access_key)
    if doc is None:
        raise NotFoundError(f'no document with access key {access_key}')
    return jsonify(FiscalDocumentDetailSchema().dump(doc)), 200


@bp.route('/nfe/<int:document_id>', methods=['GET'])
@login_required
def get_nfe(document_id):
    doc = _get_or_404(FiscalDocument, document_id, 'document')
    return jsonify(FiscalDocumentDetailSchema().dump(doc)), 200


@bp.route('/nfe/<int:document_id>/reconcile', methods=['POST'])
@login_required
def reconcile_nfe(document_id):
    doc = _locked_document(document_id)
    report = reconcile(doc)
    db.session.commit()
    return jsonify(report.to_dict()), 200


@bp.route('/nfe/<int:document_id>/process', methods=['POST'])
@login_required
def process_nfe(document_id):
    args = ProcessRequestSchema().load(_json_body())
    doc = _locked_document(document_id)

    if args['require_all_linked'] and doc.status == DocumentStatus.PENDING.value:
        unlinked = [item.item_number for item in doc.items if item.linked_material_id is None]
        if unlinked:
            db.session.rollback()
            raise UnlinkedItemsError(
                f'{len(unlinked)} item(s) still without a linked material',
                [f'det[{number}]: unlinked' for number in unlinked],
            )

    transition_document(doc, DocumentStatus.PROCESSED)
    db.session.commit()
    logger.info(f"Document #{doc.id} ({doc.access_key}) processed")
    return jsonify(FiscalDocumentSchema().dump(doc)), 200


def _close_document(document_id, target):
    args = ReasonRequestSchema().load(_json_body())
    doc = _locked_document(document_id)
    try:
        transition_document(doc, target, args['reason'])
    except FiscalError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info(f"Document #{doc.id} ({doc.access_key}) moved to {target.value}")
    return jsonify(FiscalDocumentSchema().dump(doc)), 200


@bp.route('/nfe/<int:document_id>/reject', methods=['POST'])
@login_required
def reject_nfe(document_id):
    return _close_document(document_id, DocumentStatus.REJECTED)


@bp.route('/nfe/<int:document_id>/cancel', methods=['POST'])
@login_required
def cancel_nfe(document_id):
    return _close_document(document_id, DocumentStatus.CANCELLED)


@bp.route('/nfe/<int:document_id>/link_supplier', methods=['POST'])
@login_required
def link_supplier(document_id):
    args = LinkSupplierRequestSchema().load(_json_body())
    supplier = _get_or_404(Supplier, args['supplier_id'], 'supplier')
    doc = _locked_document(document_id)

    doc.supplier_id = supplier.id
    doc.supplier = supplier
    db.session.commit()
    logger.info(f"Document #{doc.id} manually linked to supplier #{supplier.id}")
    return jsonify(FiscalDocumentSchema().dump(doc)), 200


def _next_code(model):
    """Next numeric code for ``model``; non-numeric codes are ignored."""
    codes = [int(code) for (code,) in db.session.query(model.code).all() if code and code.isdigit()]
    return str(max(codes, default=0) + 1)


@bp.route('/nfe/<int:document_id>/find_or_create_supplier', methods=['POST'])
@login_required
def find_or_create_supplier(document_id):
    """Link the supplier registered under the document's CNPJ, optionally registering it first."""
    args = FindOrCreateSupplierRequestSchema().load(_json_body())
    doc = _locked_document(document_id)

    candidates = suppliers_with_cnpj(doc.supplier_cnpj)
    if len(candidates) > 1:
        db.session.rollback()
        raise ValidationError({'supplier_cnpj': [f'matches {len(candidates)} suppliers; use link_supplier']})

    supplier = candidates[0] if candidates else None
    created = False
    if supplier is None and args['create_if_not_found']:
        supplier = Supplier(code=_next_code(Supplier), name=doc.supplier_name, cnpj=doc.supplier_cnpj)
        db.session.add(supplier)
        db.session.flush()
        created = True
        logger.info(f"Supplier #{supplier.id} ({supplier.code}) registered from document #{doc.id}")

    if supplier is not None:
        doc.supplier_id = supplier.id
        doc.supplier = supplier
        logger.info(f"Document #{doc.id} linked to supplier #{supplier.id}")
    db.session.commit()

    return jsonify({
        'found': supplier is not None,
        'created': created,
        'supplier': SupplierSchema().dump(supplier) if supplier is not None else None,
        'document': FiscalDocumentSchema().dump(doc),
    }), 200


def _remember_supplier_code(doc, item, material):
    mapping = SupplierMaterial.query.filter_by(
        supplier_id=doc.supplier_id, supplier_code=item.product_code
    ).first()
    if mapping is None:
        mapping = SupplierMaterial(supplier_id=doc.supplier_id, supplier_code=item.product_code)
        db.session.add(mapping)
    mapping.material_id = material.id


@bp.route('/nfe/items/<int:item_id>/link_material', methods=['POST'])
@login_required
def link_material(item_id):
    args = LinkMaterialRequestSchema().load(_json_body())
    item = _get_or_404(InvoiceItem, item_id, 'item')
    doc = _locked_document(item.document_id)

    if args['save_for_future'] and args['material_id'] is not None and doc.supplier_id is None:
        db.session.rollback()
        raise ValidationError({'save_for_future': ['document has no linked supplier']})

    if args['material_id'] is None:
        item.linked_material_id = None
        item.matched_by = None
        logger.info(f"Item #{item.id} of document #{doc.id} unlinked")
    else:
        material = _get_or_404(Material, args['material_id'], 'material')
        item.linked_material_id = material.id
        item.matched_by = MATCHED_BY_MANUAL
        if args['save_for_future']:
            _remember_supplier_code(doc, item, material)
        logger.info(f"Item #{item.id} of document #{doc.id} linked to material #{material.id}")

    db.session.commit()
    return jsonify(InvoiceItemSchema().dump(item)), 200


@bp.route('/nfe/items/<int:item_id>/create_material', methods=['POST'])
@login_required
def create_material_from_item(item_id):
    """Register a material from an invoice item and link the item to it."""
    args = CreateMaterialRequestSchema().load(_json_body())
    item = _get_or_404(InvoiceItem, item_id, 'item')
    doc = _locked_document(item.document_id)

    code = args['code'] or _next_code(Material)
    if Material.query.filter_by(code=code).first() is not None:
        db.session.rollback()
        raise ValidationError({'code': [f'material code {code} already in use']})

    material = Material(
        code=code,
        description=args['description'] or item.description,
        ean=item.ean,
        ncm=item.ncm,
        unit=item.unit,
    )
    try:
        db.session.add(material)
        db.session.flush()

        item.linked_material_id = material.id
        item.material = material
        item.matched_by = MATCHED_BY_MANUAL
        if doc.supplier_id is not None:
            _remember_supplier_code(doc, item, material)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError({'code': [f'material code {code} already in use']})

    logger.info(f"Material #{material.id} ({material.code}) created from item #{item.id} of document #{doc.id}")
    return jsonify({
        'material': MaterialSchema().dump(material),
        'item': InvoiceItemSchema().dump(item),
    }), 201


@bp.route('/nfe/items/<int:item_id>/suggestions', methods=['GET'])
@login_required
def material_suggestions(item_id):
    args = SuggestionArgsSchema().load(request.args)
    item = _get_or_404(InvoiceItem, item_id, 'item')
    return jsonify({
        'item_id': item.id,
        'suggestions': suggest_materials(item, limit=args['limit']),
    }), 200


# SEFAZ distribution and manifestation

@bp.route('/sefaz/manifest', methods=['POST'])
@login_required
def manifest():
    args = ManifestRequestSchema().load(_json_body())
    company = _get_or_404(Company, args['company_id'], 'company') if args['company_id'] else None

    event = submit_manifestation(
        args['access_key'],
        args['event_type'],
        args['justification'],
        _sefaz_client(),
        company=company,
        submitted_by=_current_username(),
    )
    return jsonify({
        'protocol_number': event.protocol_number,
        'status': current_status(event.access_key).value,
        'event': ManifestationEventSchema().dump(event),
    }), 201


@bp.route('/sefaz/manifestations/<access_key>', methods=['GET'])
@login_required
def manifestations(access_key):
    validation = validate_access_key(access_key)
    if not validation.valid:
        raise MalformedKeyError(validation.message, [validation.reason])

    return jsonify({
        'access_key': access_key,
        'status': current_status(access_key).value,
        'events': ManifestationEventSchema(many=True).dump(list_events(access_key)),
    }), 200


@bp.route('/sefaz/poll', methods=['POST'])
@login_required
def poll():
    args = PollRequestSchema().load(_json_body())
    company = _get_or_404(Company, args['company_id'], 'company')

    result = distribution.poll_distribution(company, _sefaz_client(), nsu=args['nsu'])
    result['documents'] = PendingNfeSchema(many=True).dump(result['documents'])
    return jsonify(result), 200


@bp.route('/sefaz/pending', methods=['GET'])
@login_required
def pending_list():
    args = PendingListArgsSchema().load(request.args)
    pending = distribution.list_by_status(args['status'], company_id=args['company_id'])
    return jsonify({
        'items': PendingNfeSchema(many=True).dump(pending),
        'total': len(pending),
    }), 200


@bp.route('/sefaz/pending/<int:pending_id>/import', methods=['POST'])
@login_required
def pending_import(pending_id):
    result = distribution.import_pending(pending_id, _sefaz_client())
    return jsonify(result.to_dict()), 201


@bp.route('/sefaz/pending/<int:pending_id>', methods=['DELETE'])
@login_required
def pending_delete(pending_id):
    distribution.delete(pending_id)
    return jsonify({'message': 'Pending NFe dismissed', 'id': pending_id}), 200
