from marshmallow import EXCLUDE, Schema, ValidationError, fields, validate, validates

from app.access_key import format_access_key
from app.status import DocumentStatus, ManifestationStatus, ManifestationType

DOCUMENT_STATUS_FILTERS = [status.value for status in DocumentStatus] + ['ALL']
PENDING_STATUS_FILTERS = [status.value for status in ManifestationStatus] + ['ALL']


class InvoiceItemSchema(Schema):
    id = fields.Int(dump_only=True)
    item_number = fields.Int()
    product_code = fields.Str()
    ean = fields.Str(allow_none=True)
    description = fields.Str()
    ncm = fields.Str(allow_none=True)
    cfop = fields.Str(allow_none=True)
    unit = fields.Str(allow_none=True)
    quantity = fields.Float()
    unit_value = fields.Float()
    total_value = fields.Float()
    linked_material_id = fields.Int(allow_none=True)
    matched_by = fields.Str(allow_none=True)
    material_code = fields.Function(lambda item: item.material.code if item.material else None)
    material_description = fields.Function(lambda item: item.material.description if item.material else None)


class FiscalDocumentSchema(Schema):
    id = fields.Int(dump_only=True)
    access_key = fields.Str()
    document_number = fields.Str()
    series = fields.Str()
    model = fields.Str(allow_none=True)
    issue_date = fields.DateTime()
    operation_nature = fields.Str(allow_none=True)
    supplier_cnpj = fields.Str()
    supplier_name = fields.Str()
    recipient_cnpj = fields.Str(allow_none=True)
    total_value = fields.Float()
    products_value = fields.Float(allow_none=True)
    protocol_number = fields.Str(allow_none=True)
    status = fields.Str()
    rejection_reason = fields.Str(allow_none=True)
    cancellation_reason = fields.Str(allow_none=True)
    processed_at = fields.DateTime(allow_none=True)
    rejected_at = fields.DateTime(allow_none=True)
    cancelled_at = fields.DateTime(allow_none=True)
    supplier_id = fields.Int(allow_none=True)
    supplier_code = fields.Function(lambda doc: doc.supplier.code if doc.supplier else None)
    items_count = fields.Function(lambda doc: len(doc.items))
    linked_items_count = fields.Int()
    created_at = fields.DateTime()


class FiscalDocumentDetailSchema(FiscalDocumentSchema):
    access_key_formatted = fields.Function(lambda doc: format_access_key(doc.access_key))
    items = fields.List(fields.Nested(InvoiceItemSchema))
    xml_content = fields.Str()


class SupplierSchema(Schema):
    id = fields.Int(dump_only=True)
    code = fields.Str(allow_none=True)
    name = fields.Str()
    cnpj = fields.Str(allow_none=True)


class MaterialSchema(Schema):
    id = fields.Int(dump_only=True)
    code = fields.Str()
    description = fields.Str()
    ean = fields.Str(allow_none=True)
    ncm = fields.Str(allow_none=True)
    unit = fields.Str(allow_none=True)


class PendingNfeSchema(Schema):
    id = fields.Int(dump_only=True)
    company_id = fields.Int(allow_none=True)
    access_key = fields.Str()
    nsu = fields.Int()
    schema = fields.Str(allow_none=True)
    status = fields.Str()
    supplier_cnpj = fields.Str(allow_none=True)
    supplier_name = fields.Str(allow_none=True)
    issue_date = fields.DateTime(allow_none=True)
    total_value = fields.Float(allow_none=True)
    discovered_at = fields.DateTime()
    updated_at = fields.DateTime()


class ManifestationEventSchema(Schema):
    id = fields.Int(dump_only=True)
    access_key = fields.Str()
    event_type = fields.Str()
    event_code = fields.Str()
    from_status = fields.Str()
    justification = fields.Str(allow_none=True)
    protocol_number = fields.Str(allow_none=True)
    status_code = fields.Str(allow_none=True)
    status_message = fields.Str(allow_none=True)
    submitted_by = fields.Str(allow_none=True)
    submitted_at = fields.DateTime()


# Request payloads

class ImportRequestSchema(Schema):
    xml_content = fields.Str(required=True, validate=validate.Length(min=1))


class BatchImportRequestSchema(Schema):
    xml_contents = fields.List(fields.Str(), required=True, validate=validate.Length(min=1, max=100))


class DocumentListArgsSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    status = fields.Str(load_default='ALL', validate=validate.OneOf(DOCUMENT_STATUS_FILTERS))
    supplier_id = fields.Int(load_default=None)
    start_date = fields.Date(load_default=None)
    end_date = fields.Date(load_default=None)
    search = fields.Str(load_default=None)
    page = fields.Int(load_default=1, validate=validate.Range(min=1))
    limit = fields.Int(load_default=20, validate=validate.Range(min=1, max=100))


class ProcessRequestSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    require_all_linked = fields.Bool(load_default=True)


class ReasonRequestSchema(Schema):
    # Blank reasons reach the state machine, which owns that rule
    reason = fields.Str(load_default=None, allow_none=True)


class LinkSupplierRequestSchema(Schema):
    supplier_id = fields.Int(required=True)


class FindOrCreateSupplierRequestSchema(Schema):
    create_if_not_found = fields.Bool(load_default=False)


class CreateMaterialRequestSchema(Schema):
    code = fields.Str(load_default=None, validate=validate.Length(min=1, max=60))
    description = fields.Str(load_default=None, validate=validate.Length(min=1, max=500))


class LinkMaterialRequestSchema(Schema):
    material_id = fields.Int(required=True, allow_none=True)
    save_for_future = fields.Bool(load_default=False)


class SuggestionArgsSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    limit = fields.Int(load_default=5, validate=validate.Range(min=1, max=50))


class ManifestRequestSchema(Schema):
    access_key = fields.Str(required=True)
    event_type = fields.Str(required=True, validate=validate.OneOf([event.value for event in ManifestationType]))
    justification = fields.Str(load_default=None, allow_none=True)
    company_id = fields.Int(load_default=None)

    @validates('justification')
    def validate_justification_length(self, value, **kwargs):
        # SEFAZ accepts 15 to 255 characters; blank is left to the state machine
        if value and value.strip() and not 15 <= len(value.strip()) <= 255:
            raise ValidationError('justification must have between 15 and 255 characters')


class PollRequestSchema(Schema):
    company_id = fields.Int(required=True)
    nsu = fields.Int(load_default=None, validate=validate.Range(min=0))


class PendingListArgsSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    status = fields.Str(load_default='ALL', validate=validate.OneOf(PENDING_STATUS_FILTERS))
    company_id = fields.Int(load_default=None)
