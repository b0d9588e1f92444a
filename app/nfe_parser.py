"""
NFe XML parser.

Turns an ``nfeProc`` (or bare ``NFe``) XML into a transient
``FiscalDocument`` with its ``InvoiceItem`` children. Nothing is added to
the session here; persisting is the import gate's job.

Structure read:
    <nfeProc>
        <NFe>
            <infNFe Id="NFe{44 digits}">
                <ide>...</ide>      # cUF, cNF, mod, serie, nNF, dhEmi, tpEmis, cDV
                <emit>...</emit>    # supplier CNPJ / xNome
                <dest>...</dest>
                <det nItem="1">     # one per item: prod/cProd, cEAN, xProd, NCM, qCom, vUnCom, vProd
                <total><ICMSTot>    # vNF, vProd
            </infNFe>
        </NFe>
        <protNFe><infProt><chNFe/><nProt/></infProt></protNFe>
    </nfeProc>

Namespaced and namespace-less documents are both accepted.
"""
import logging
import re
import xml.etree.ElementTree as ET

from app.access_key import describe_access_key, validate_access_key
from app.errors import InvalidDocumentError, MalformedXmlError
from app.models import FiscalDocument, InvoiceItem
from app.status import DocumentStatus
from app.utils import only_digits, parse_nfe_datetime

logger = logging.getLogger(__name__)

NFE_NAMESPACE = 'http://www.portalfiscal.inf.br/nfe'

_NUMBER_RE = re.compile(r'-?\d+(\.\d+)?')
_NO_EAN = {'', 'SEM GTIN'}


_ENCODING_RE = re.compile(rb'^\s*<\?xml[^>]*encoding=["\']([\w.-]+)["\']')


def _decode_xml(xml_content):
    """Bytes to text using the encoding declared in the XML prolog (UTF-8 if none)."""
    if not isinstance(xml_content, bytes):
        return xml_content
    match = _ENCODING_RE.match(xml_content.lstrip(b'\xef\xbb\xbf'))
    declared = match.group(1).decode('ascii') if match else 'UTF-8'
    codec = 'utf-8-sig' if declared.lower().replace('_', '-') in ('utf-8', 'utf8') else declared
    try:
        return xml_content.decode(codec)
    except (LookupError, UnicodeDecodeError) as e:
        raise MalformedXmlError('XML content could not be decoded', [f'xml: not valid {declared} ({e})'])


def _local(tag):
    return tag.split('}')[-1]


def _find(elem, path):
    """Namespace-agnostic find: 'emit/CNPJ' -> '{*}emit/{*}CNPJ'."""
    if elem is None:
        return None
    return elem.find('/'.join('{*}' + part for part in path.split('/')))


def _text(elem, path):
    found = _find(elem, path)
    if found is None or found.text is None:
        return None
    text = found.text.strip()
    return text or None


def _required_text(elem, path, label, errors):
    value = _text(elem, path)
    if value is None:
        errors.append(f'{label}: missing')
    return value


def _number(elem, path, label, errors, required=True):
    value = _text(elem, path)
    if value is None:
        if required:
            errors.append(f'{label}: missing')
        return None
    if not _NUMBER_RE.fullmatch(value):
        errors.append(f'{label}: not a number ({value!r})')
        return None
    return float(value)


def _parse_items(inf_nfe, errors):
    dets = inf_nfe.findall('{*}det')
    if not dets:
        errors.append('det: document has no items')
        return []

    items = []
    for position, det in enumerate(dets, start=1):
        raw_number = det.attrib.get('nItem') or str(position)
        label = f'det[{raw_number}]'
        try:
            item_number = int(raw_number)
        except ValueError:
            errors.append(f'{label}/@nItem: not a number ({raw_number!r})')
            item_number = position

        prod = _find(det, 'prod')
        if prod is None:
            errors.append(f'{label}/prod: missing')
            continue

        ean = _text(prod, 'cEAN')
        if ean is None or ean.upper() in _NO_EAN:
            ean = _text(prod, 'cEANTrib')
        if ean is not None and ean.upper() in _NO_EAN:
            ean = None

        items.append(InvoiceItem(
            item_number=item_number,
            product_code=_required_text(prod, 'cProd', f'{label}/prod/cProd', errors),
            ean=ean,
            description=_required_text(prod, 'xProd', f'{label}/prod/xProd', errors),
            ncm=_text(prod, 'NCM'),
            cfop=_text(prod, 'CFOP'),
            unit=_text(prod, 'uCom'),
            quantity=_number(prod, 'qCom', f'{label}/prod/qCom', errors),
            unit_value=_number(prod, 'vUnCom', f'{label}/prod/vUnCom', errors),
            total_value=_number(prod, 'vProd', f'{label}/prod/vProd', errors),
        ))
    return items


def _check_identity(access_key, ide, supplier_cnpj, issue_date, protocol_key):
    """Cross-check the Id key against protNFe and the ide block."""
    validation = validate_access_key(access_key)
    if not validation.valid:
        raise InvalidDocumentError(f'invalid access key: {validation.message}', [validation.reason])

    mismatches = []
    if protocol_key is not None and protocol_key != access_key:
        mismatches.append(f'protNFe/infProt/chNFe: {protocol_key} differs from infNFe/@Id')

    segments = describe_access_key(access_key)
    expected = (
        ('ide/cUF', _text(ide, 'cUF'), segments['cuf'], 2),
        ('ide/mod', _text(ide, 'mod'), segments['modelo'], 2),
        ('ide/serie', _text(ide, 'serie'), segments['serie'], 3),
        ('ide/nNF', _text(ide, 'nNF'), segments['numero'], 9),
        ('ide/tpEmis', _text(ide, 'tpEmis'), segments['tp_emis'], 1),
        ('ide/cNF', _text(ide, 'cNF'), segments['codigo_numerico'], 8),
        ('ide/cDV', _text(ide, 'cDV'), segments['dv'], 1),
        ('emit/CNPJ', supplier_cnpj, segments['cnpj'], 14),
    )
    for label, value, segment, width in expected:
        if value is None:
            continue
        if not value.isdigit() or value.zfill(width) != segment:
            mismatches.append(f'{label}: {value} does not match access key segment {segment}')

    if issue_date is not None and issue_date.strftime('%y%m') != segments['aamm']:
        mismatches.append(f"ide/dhEmi: {issue_date.strftime('%y%m')} does not match access key segment {segments['aamm']}")

    if mismatches:
        raise InvalidDocumentError('access key does not match the document identification', mismatches)


def parse_nfe_xml(xml_content):
    """
    Parse NFe XML content into a FiscalDocument (not persisted).

    Raises MalformedXmlError with a field-level detail list when the
    structure is incomplete, and InvalidDocumentError when the document
    identity does not hold.
    """
    if not xml_content or not (xml_content.strip() if isinstance(xml_content, (str, bytes)) else None):
        raise MalformedXmlError('empty XML content', ['xml: empty'])

    xml_content = _decode_xml(xml_content)
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise MalformedXmlError('XML could not be parsed', [f'xml: {e}'])

    inf_nfe = root if _local(root.tag) == 'infNFe' else root.find('.//{*}infNFe')
    if inf_nfe is None:
        raise MalformedXmlError('infNFe element not found', ['infNFe: missing'])

    errors = []

    # Extract chave from ID (format: "NFe12345...")
    id_attr = (inf_nfe.attrib.get('Id') or '').strip()
    access_key = id_attr[3:] if id_attr.startswith('NFe') else id_attr
    if not access_key:
        errors.append('infNFe/@Id: missing')

    ide = _find(inf_nfe, 'ide')
    emit = _find(inf_nfe, 'emit')
    dest = _find(inf_nfe, 'dest')
    icms_tot = _find(inf_nfe, 'total/ICMSTot')

    for label, elem in (('ide', ide), ('emit', emit), ('total/ICMSTot', icms_tot)):
        if elem is None:
            errors.append(f'{label}: missing')

    document_number = _required_text(ide, 'nNF', 'ide/nNF', errors) if ide is not None else None
    series = _required_text(ide, 'serie', 'ide/serie', errors) if ide is not None else None

    issue_date = None
    if ide is not None:
        raw_date = _text(ide, 'dhEmi') or _text(ide, 'dEmi')
        if raw_date is None:
            errors.append('ide/dhEmi: missing')
        else:
            try:
                issue_date = parse_nfe_datetime(raw_date)
            except ValueError:
                errors.append(f'ide/dhEmi: not a date ({raw_date!r})')

    supplier_cnpj = None
    supplier_name = None
    if emit is not None:
        raw_cnpj = _required_text(emit, 'CNPJ', 'emit/CNPJ', errors)
        if raw_cnpj is not None:
            supplier_cnpj = only_digits(raw_cnpj)
            if len(supplier_cnpj) != 14:
                errors.append(f'emit/CNPJ: must have 14 digits ({raw_cnpj!r})')
        supplier_name = _required_text(emit, 'xNome', 'emit/xNome', errors)

    total_value = _number(icms_tot, 'vNF', 'total/ICMSTot/vNF', errors) if icms_tot is not None else None
    products_value = _number(icms_tot, 'vProd', 'total/ICMSTot/vProd', errors, required=False) if icms_tot is not None else None

    items = _parse_items(inf_nfe, errors)

    if errors:
        raise MalformedXmlError(f'{len(errors)} invalid field(s) in NFe XML', errors)

    prot = root.find('.//{*}protNFe/{*}infProt')
    _check_identity(access_key, ide, supplier_cnpj, issue_date, _text(prot, 'chNFe'))

    recipient_cnpj = only_digits(_text(dest, 'CNPJ')) or None

    document = FiscalDocument(
        access_key=access_key,
        xml_content=xml_content,
        document_number=document_number,
        series=series,
        model=_text(ide, 'mod'),
        issue_date=issue_date,
        operation_nature=_text(ide, 'natOp'),
        supplier_cnpj=supplier_cnpj,
        supplier_name=supplier_name,
        recipient_cnpj=recipient_cnpj,
        total_value=total_value,
        products_value=products_value,
        protocol_number=_text(prot, 'nProt'),
        status=DocumentStatus.PENDING.value,
        items=items,
    )
    logger.debug(f"Parsed NFe {access_key} with {len(items)} items")
    return document
