"""Builders for consistent NFe test payloads."""
import base64
import gzip

from app.access_key import compute_check_digit
from app.sefaz import DistributedDocument, DistributionBatch, ManifestationReceipt
from app.errors import ExternalServiceError

SUPPLIER_CNPJ = '12345678000190'
RECIPIENT_CNPJ = '98765432000110'


def build_access_key(cuf='35', aamm='2601', cnpj=SUPPLIER_CNPJ, model='55', series='001',
                     number='000012345', emission_type='1', numeric_code='23456789'):
    prefix = f'{cuf}{aamm}{cnpj}{model}{series}{number}{emission_type}{numeric_code}'
    return prefix + str(compute_check_digit(prefix))


DEFAULT_ITEMS = (
    {'code': 'MAT-001', 'description': 'PARAFUSO SEXTAVADO M8', 'ncm': '73181500', 'ean': '7891234567895',
     'qty': '10.0000', 'unit_value': '1.5000', 'total': '15.00'},
    {'code': 'MAT-002', 'description': 'ARRUELA LISA M8', 'ncm': '73182200', 'ean': 'SEM GTIN',
     'qty': '20.0000', 'unit_value': '0.2500', 'total': '5.00'},
)


def _item_xml(number, item):
    ean = item.get('ean', 'SEM GTIN')
    ncm = f"<NCM>{item['ncm']}</NCM>" if item.get('ncm') else ''
    return (
        f'<det nItem="{number}"><prod>'
        f"<cProd>{item['code']}</cProd>"
        f'<cEAN>{ean}</cEAN>'
        f"<xProd>{item['description']}</xProd>"
        f'{ncm}'
        f'<CFOP>5102</CFOP>'
        f"<uCom>{item.get('unit', 'UN')}</uCom>"
        f"<qCom>{item['qty']}</qCom>"
        f"<vUnCom>{item['unit_value']}</vUnCom>"
        f"<vProd>{item['total']}</vProd>"
        f'</prod></det>'
    )


def build_nfe_xml(number='12345', series='1', cnpj=SUPPLIER_CNPJ, supplier_name='FORNECEDOR TESTE LTDA',
                  issue_date='2026-01-15T10:30:00-03:00', items=DEFAULT_ITEMS, total='20.00',
                  namespace=True, with_protocol=True, protocol_key=None, access_key=None):
    if access_key is None:
        access_key = build_access_key(cnpj=cnpj, series=series.zfill(3), number=number.zfill(9))
    xmlns = ' xmlns="http://www.portalfiscal.inf.br/nfe"' if namespace else ''
    details = ''.join(_item_xml(index, item) for index, item in enumerate(items, start=1))
    nfe = (
        f'<NFe{xmlns}><infNFe Id="NFe{access_key}" versao="4.00">'
        f'<ide><cUF>{access_key[0:2]}</cUF><cNF>{access_key[35:43]}</cNF><natOp>VENDA DE MERCADORIA</natOp>'
        f'<mod>{access_key[20:22]}</mod><serie>{series}</serie><nNF>{number}</nNF>'
        f'<dhEmi>{issue_date}</dhEmi><tpEmis>{access_key[34]}</tpEmis><cDV>{access_key[43]}</cDV></ide>'
        f'<emit><CNPJ>{cnpj}</CNPJ><xNome>{supplier_name}</xNome></emit>'
        f'<dest><CNPJ>{RECIPIENT_CNPJ}</CNPJ><xNome>EMPRESA COMPRADORA SA</xNome></dest>'
        f'{details}'
        f'<total><ICMSTot><vProd>{total}</vProd><vNF>{total}</vNF></ICMSTot></total>'
        f'</infNFe></NFe>'
    )
    if not with_protocol:
        return f'<?xml version="1.0" encoding="UTF-8"?>{nfe}'
    protocol = (
        f'<protNFe versao="4.00"><infProt><chNFe>{protocol_key or access_key}</chNFe>'
        f'<nProt>135260000012345</nProt><cStat>100</cStat></infProt></protNFe>'
    )
    return f'<?xml version="1.0" encoding="UTF-8"?><nfeProc{xmlns} versao="4.00">{nfe}{protocol}</nfeProc>'


def build_res_nfe_xml(access_key, cnpj=SUPPLIER_CNPJ, name='FORNECEDOR TESTE LTDA', total='20.00'):
    return (
        '<resNFe xmlns="http://www.portalfiscal.inf.br/nfe" versao="1.01">'
        f'<chNFe>{access_key}</chNFe><CNPJ>{cnpj}</CNPJ><xNome>{name}</xNome>'
        f'<dhEmi>2026-01-15T10:30:00-03:00</dhEmi><tpNF>1</tpNF><vNF>{total}</vNF>'
        '<cSitNFe>1</cSitNFe></resNFe>'
    )


def doc_zip(xml):
    return base64.b64encode(gzip.compress(xml.encode('utf-8'))).decode('ascii')


class FakeSefazClient:
    """Stands in for SefazClient; records every call."""

    def __init__(self):
        self.batches = []
        self.full_xml = {}
        self.manifest_error = None
        self.calls = []
        self.on_fetch = None

    def fetch_distribution(self, cnpj, uf, nsu=0):
        self.calls.append(('fetch_distribution', cnpj, uf, nsu))
        if self.on_fetch is not None:
            self.on_fetch()
        if not self.batches:
            return DistributionBatch('137', 'Nenhum documento localizado', nsu, nsu, [])
        return self.batches.pop(0)

    def fetch_by_key(self, cnpj, uf, access_key):
        self.calls.append(('fetch_by_key', cnpj, uf, access_key))
        if access_key not in self.full_xml:
            raise ExternalServiceError(f'full XML not available yet for access key {access_key}')
        return self.full_xml[access_key]

    def manifest(self, cnpj, uf, access_key, event_code, justification=None):
        self.calls.append(('manifest', cnpj, uf, access_key, event_code, justification))
        if self.manifest_error is not None:
            raise self.manifest_error
        return ManifestationReceipt('135', 'Evento registrado e vinculado a NF-e', '891260000000001')

    def add_batch(self, last_nsu, max_nsu, documents):
        self.batches.append(DistributionBatch(
            '138', 'Documento localizado', last_nsu, max_nsu,
            [DistributedDocument(nsu, schema, xml) for nsu, schema, xml in documents],
        ))
