from datetime import datetime
from sqlalchemy import event
from app import db
from app.status import DocumentStatus, ManifestationStatus
from flask_login import UserMixin


class FiscalDocument(db.Model):
    __tablename__ = 'fiscal_documents'

    id = db.Column(db.Integer, primary_key=True)

    # Canonical external key; deduplication is enforced by the unique constraint
    access_key = db.Column(db.String(44), nullable=False, index=True)
    xml_content = db.Column(db.Text, nullable=False)  # Full XML content for exact reconstruction

    document_number = db.Column(db.String(20), nullable=False)
    series = db.Column(db.String(10), nullable=False)
    model = db.Column(db.String(2))  # 55 for NFe, 65 for NFCe
    issue_date = db.Column(db.DateTime, nullable=False)
    operation_nature = db.Column(db.String(255))

    supplier_cnpj = db.Column(db.String(14), nullable=False, index=True)
    supplier_name = db.Column(db.String(255), nullable=False)
    recipient_cnpj = db.Column(db.String(14))

    total_value = db.Column(db.Float, nullable=False)
    products_value = db.Column(db.Float)

    protocol_number = db.Column(db.String(20))  # nProt from protNFe

    status = db.Column(db.String(20), nullable=False, default=DocumentStatus.PENDING.value, index=True)
    rejection_reason = db.Column(db.Text)
    cancellation_reason = db.Column(db.Text)
    processed_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)

    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    items = db.relationship('InvoiceItem', backref='document', cascade='all, delete-orphan',
                            order_by='InvoiceItem.item_number')
    supplier = db.relationship('Supplier', backref=db.backref('documents', lazy='dynamic'))

    __table_args__ = (
        db.UniqueConstraint('access_key', name='uq_fiscal_documents_access_key'),
    )

    @property
    def linked_items_count(self):
        return sum(1 for item in self.items if item.linked_material_id is not None)

    def __repr__(self):
        return f"<FiscalDocument {self.document_number} ({self.access_key})>"


class InvoiceItem(db.Model):
    __tablename__ = 'invoice_items'

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey('fiscal_documents.id'), nullable=False, index=True)

    item_number = db.Column(db.Integer, nullable=False)  # nItem
    product_code = db.Column(db.String(60), nullable=False)  # cProd
    ean = db.Column(db.String(20))  # cEAN, None for "SEM GTIN"
    description = db.Column(db.String(500), nullable=False)
    ncm = db.Column(db.String(10))
    cfop = db.Column(db.String(5))
    unit = db.Column(db.String(10))
    quantity = db.Column(db.Float, nullable=False)
    unit_value = db.Column(db.Float, nullable=False)
    total_value = db.Column(db.Float, nullable=False)

    linked_material_id = db.Column(db.Integer, db.ForeignKey('materials.id'), nullable=True)
    matched_by = db.Column(db.String(20))  # material_code | supplier_code | ean | manual

    material = db.relationship('Material')


class Supplier(db.Model):
    __tablename__ = 'suppliers'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20))
    name = db.Column(db.String(255), nullable=False)
    cnpj = db.Column(db.String(18), index=True)  # stored as informed, matched by digits only


class Material(db.Model):
    __tablename__ = 'materials'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(60), nullable=False, unique=True, index=True)
    description = db.Column(db.String(500), nullable=False)
    ean = db.Column(db.String(20), index=True)
    ncm = db.Column(db.String(10))
    unit = db.Column(db.String(10))


class SupplierMaterial(db.Model):
    """
    Supplier product code learned for an internal material.
    Written when a user links an invoice item manually with save_for_future.
    """
    __tablename__ = 'supplier_materials'

    id = db.Column(db.Integer, primary_key=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False, index=True)
    material_id = db.Column(db.Integer, db.ForeignKey('materials.id'), nullable=False)
    supplier_code = db.Column(db.String(60), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    supplier = db.relationship('Supplier')
    material = db.relationship('Material')

    __table_args__ = (
        db.UniqueConstraint('supplier_id', 'supplier_code', name='uq_supplier_material_code'),
    )


class Company(db.Model):
    """Receiver of the documents; owner of a distribution cursor."""
    __tablename__ = 'companies'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    cnpj = db.Column(db.String(18), nullable=True)
    uf = db.Column(db.String(2), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def __repr__(self):
        return f"<Company {self.name} ({self.cnpj})>"


class DistributionCursor(db.Model):
    __tablename__ = 'distribution_cursors'

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=False)
    last_nsu = db.Column(db.BigInteger, nullable=False, default=0)
    max_nsu = db.Column(db.BigInteger, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    company = db.relationship('Company', backref=db.backref('distribution_cursor', uselist=False))

    __table_args__ = (
        db.UniqueConstraint('company_id', name='uq_distribution_cursor_company'),
    )


class PendingNfe(db.Model):
    """
    Document announced by the SEFAZ distribution feed, imported or not.
    Its status follows the manifestation lifecycle, not the document one.
    """
    __tablename__ = 'pending_nfes'

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, db.ForeignKey('companies.id'), nullable=True)
    access_key = db.Column(db.String(44), nullable=False, index=True)
    nsu = db.Column(db.BigInteger, nullable=False)
    schema = db.Column(db.String(30))  # resNFe | procNFe
    status = db.Column(db.String(20), nullable=False, default=ManifestationStatus.PENDING.value, index=True)
    raw_xml = db.Column(db.Text, nullable=False)

    # Summary data for the listing screen
    supplier_cnpj = db.Column(db.String(14))
    supplier_name = db.Column(db.String(255))
    issue_date = db.Column(db.DateTime)
    total_value = db.Column(db.Float)

    discovered_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    company = db.relationship('Company')

    __table_args__ = (
        db.UniqueConstraint('access_key', name='uq_pending_nfes_access_key'),
    )


class ManifestationEvent(db.Model):
    """Append-only log of manifestation events accepted by SEFAZ."""
    __tablename__ = 'manifestation_events'
    # Each status is left at most once per key
    __table_args__ = (
        db.UniqueConstraint('access_key', 'from_status', name='uq_manifestation_events_transition'),
    )

    id = db.Column(db.Integer, primary_key=True)
    access_key = db.Column(db.String(44), nullable=False, index=True)
    event_type = db.Column(db.String(20), nullable=False)
    event_code = db.Column(db.String(6), nullable=False)  # tpEvento
    from_status = db.Column(db.String(20), nullable=False)
    justification = db.Column(db.Text)
    protocol_number = db.Column(db.String(20))  # nProt
    status_code = db.Column(db.String(6))  # cStat
    status_message = db.Column(db.String(255))  # xMotivo
    submitted_by = db.Column(db.String(150))
    submitted_at = db.Column(db.DateTime, nullable=False, default=datetime.now)


@event.listens_for(ManifestationEvent, 'before_update')
def _refuse_event_update(mapper, connection, target):
    raise ValueError('manifestation events are append-only')


@event.listens_for(ManifestationEvent, 'before_delete')
def _refuse_event_delete(mapper, connection, target):
    raise ValueError('manifestation events are append-only')


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), unique=True, nullable=False)
    email = db.Column(db.String(150), unique=True, nullable=False)
    password = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(50), nullable=False, default='viewer')  # 'admin' | 'viewer' | 'fiscal'
    login_history = db.relationship('LoginHistory', backref='user', lazy=True)


class LoginHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    login_time = db.Column(db.DateTime, default=datetime.now)
    logout_time = db.Column(db.DateTime, nullable=True)
    login_ip = db.Column(db.String(45), nullable=True)
    login_user_agent = db.Column(db.Text, nullable=True)
    logout_ip = db.Column(db.String(45), nullable=True)
    logout_user_agent = db.Column(db.Text, nullable=True)
    login_method = db.Column(db.String(32), nullable=True)
