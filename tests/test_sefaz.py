import pytest
import requests

from app.errors import ExternalServiceError
from app.sefaz import SefazClient
from nfe_samples import build_access_key, build_nfe_xml, build_res_nfe_xml, doc_zip

KEY = build_access_key()
CNPJ = '98765432000110'


class StubResponse:

    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code
        self.text = str(body)

    def json(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class StubSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({'url': url, 'json': json, 'timeout': timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _client(body=None, status_code=200, error=None, **kwargs):
    session = StubSession(StubResponse(body, status_code), error)
    client = SefazClient('http://proxy.test/sefaz', timeout=5, session=session, **kwargs)
    return client, session


def test_fetch_distribution_decodes_documents():
    client, session = _client({'success': True, 'data': {
        'cStat': '138',
        'xMotivo': 'Documento localizado',
        'ultNSU': '000000000000012',
        'maxNSU': '000000000000020',
        'documentos': [
            {'nsu': '000000000000011', 'schema': 'resNFe_v1.01.xsd', 'conteudo': doc_zip(build_res_nfe_xml(KEY))},
            {'nsu': '000000000000012', 'schema': 'procNFe_v4.00.xsd', 'conteudo': doc_zip(build_nfe_xml())},
        ],
    }})

    batch = client.fetch_distribution(CNPJ, 'SP', 10)

    assert batch.status_code == '138'
    assert batch.last_nsu == 12
    assert batch.max_nsu == 20
    assert [(doc.nsu, doc.schema) for doc in batch.documents] == [(11, 'resNFe'), (12, 'procNFe')]
    assert batch.documents[0].xml == build_res_nfe_xml(KEY)

    payload = session.requests[0]['json']
    assert payload['action'] == 'consultarNFeDestinadas'
    assert payload['nsu'] == '10'
    assert payload['ambiente'] == 'homologacao'
    assert session.requests[0]['timeout'] == 5


def test_fetch_distribution_empty_feed():
    client, _ = _client({'success': True, 'data': {'cStat': '137', 'xMotivo': 'Nenhum documento localizado'}})
    batch = client.fetch_distribution(CNPJ, 'SP', 30)
    assert batch.documents == []
    assert batch.last_nsu == batch.max_nsu == 30


def test_rejection_status_is_surfaced_verbatim():
    client, _ = _client({'success': True, 'data': {'cStat': '656', 'xMotivo': 'Rejeicao: Consumo Indevido'}})

    with pytest.raises(ExternalServiceError) as exc_info:
        client.fetch_distribution(CNPJ, 'SP')

    assert exc_info.value.message == 'Rejeicao: Consumo Indevido'
    assert exc_info.value.service_status == '656'


def test_proxy_failures():
    client, _ = _client({'success': False, 'error': 'Certificado expirado'})
    with pytest.raises(ExternalServiceError, match='Certificado expirado'):
        client.fetch_distribution(CNPJ, 'SP')

    client, _ = _client(ValueError('no json'), status_code=500)
    with pytest.raises(ExternalServiceError) as exc_info:
        client.fetch_distribution(CNPJ, 'SP')
    assert exc_info.value.upstream_status == 500

    client, _ = _client(error=requests.ConnectionError('connection refused'))
    with pytest.raises(ExternalServiceError, match='unreachable'):
        client.fetch_distribution(CNPJ, 'SP')


def test_proxy_url_required():
    client = SefazClient(None, session=StubSession())
    with pytest.raises(ExternalServiceError, match='not configured'):
        client.manifest(CNPJ, 'SP', KEY, '210210')


def test_manifest_receipt_and_certificate():
    client, session = _client(
        {'success': True, 'data': {'cStat': '135', 'xMotivo': 'Evento registrado', 'nProt': '891260000000001'}},
        cert_pem='CERT', key_pem='KEY',
    )

    receipt = client.manifest(CNPJ, 'SP', KEY, '210240', 'Operacao nao realizada pelo comprador')

    assert receipt.status_code == '135'
    assert receipt.protocol_number == '891260000000001'
    payload = session.requests[0]['json']
    assert payload['tipoEvento'] == '210240'
    assert payload['chave'] == KEY
    assert payload['certPem'] == 'CERT'
    assert payload['keyPem'] == 'KEY'


def test_fetch_by_key_requires_full_document():
    client, _ = _client({'success': True, 'data': {'cStat': '138', 'documentos': [
        {'nsu': '1', 'schema': 'procNFe_v4.00.xsd', 'conteudo': doc_zip(build_nfe_xml())},
    ]}})
    assert client.fetch_by_key(CNPJ, 'SP', KEY) == build_nfe_xml()

    client, _ = _client({'success': True, 'data': {'cStat': '138', 'documentos': [
        {'nsu': '1', 'schema': 'resNFe_v1.01.xsd', 'conteudo': doc_zip(build_res_nfe_xml(KEY))},
    ]}})
    with pytest.raises(ExternalServiceError, match='not available'):
        client.fetch_by_key(CNPJ, 'SP', KEY)
