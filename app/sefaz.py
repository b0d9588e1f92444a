"""
Client for the SEFAZ web services, reached through an HTTP proxy that holds
the SOAP/mTLS transport.

Proxy protocol (JSON over POST):

    request:  {"action": "consultarNFeDestinadas" | "consultarPorChave" | "manifestar",
               "ambiente": "homologacao" | "producao", "cnpj", "uf",
               "nsu"?, "chave"?, "tipoEvento"?, "justificativa"?, "certPem"?, "keyPem"?}
    response: {"success": bool, "error"?: str,
               "data": {"cStat", "xMotivo", "ultNSU", "maxNSU", "nProt"?,
                        "documentos": [{"nsu", "schema", "conteudo"}]}}

``conteudo`` is the docZip payload: base64 of a gzip-compressed XML.
"""
import base64
import binascii
import gzip
import logging
from collections import namedtuple

import requests

from app.errors import ExternalServiceError

logger = logging.getLogger(__name__)

ACTION_DISTRIBUTION = 'consultarNFeDestinadas'
ACTION_BY_KEY = 'consultarPorChave'
ACTION_MANIFEST = 'manifestar'

# 137: no documents found, 138: documents found
DISTRIBUTION_OK = {'137', '138'}
# 135: event registered, 136: event registered but not linked to the NFe
MANIFESTATION_OK = {'135', '136'}

SCHEMA_SUMMARY = 'resNFe'
SCHEMA_FULL = 'procNFe'

DistributedDocument = namedtuple('DistributedDocument', ['nsu', 'schema', 'xml'])
DistributionBatch = namedtuple('DistributionBatch', ['status_code', 'status_message', 'last_nsu', 'max_nsu', 'documents'])
ManifestationReceipt = namedtuple('ManifestationReceipt', ['status_code', 'status_message', 'protocol_number'])


def schema_kind(schema):
    """'procNFe_v4.00.xsd' -> 'procNFe'."""
    return (schema or '').split('_')[0]


def decode_doc_zip(content):
    """Decode a docZip payload to XML text. Plain base64 XML is accepted too."""
    try:
        raw = base64.b64decode(content, validate=False)
        if raw[:2] == b'\x1f\x8b':
            raw = gzip.decompress(raw)
        return raw.decode('utf-8')
    except (binascii.Error, OSError, UnicodeDecodeError, TypeError) as e:
        raise ExternalServiceError(f'undecodable docZip payload: {e}')


def encode_doc_zip(xml):
    return base64.b64encode(gzip.compress(xml.encode('utf-8'))).decode('ascii')


class SefazClient:

    def __init__(self, proxy_url, ambiente='homologacao', timeout=30, cert_pem=None, key_pem=None, session=None):
        self.proxy_url = proxy_url
        self.ambiente = ambiente
        self.timeout = timeout
        self.cert_pem = cert_pem
        self.key_pem = key_pem
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            proxy_url=config.get('SEFAZ_PROXY_URL'),
            ambiente=config.get('SEFAZ_AMBIENTE', 'homologacao'),
            timeout=config.get('SEFAZ_TIMEOUT', 30),
            cert_pem=config.get('SEFAZ_CERT_PEM'),
            key_pem=config.get('SEFAZ_KEY_PEM'),
        )

    def _post(self, payload):
        if not self.proxy_url:
            raise ExternalServiceError('SEFAZ proxy URL is not configured')

        payload = dict(payload, ambiente=self.ambiente)
        if self.cert_pem and self.key_pem:
            payload['certPem'] = self.cert_pem
            payload['keyPem'] = self.key_pem

        try:
            response = self.session.post(
                self.proxy_url,
                json=payload,
                headers={'Content-Type': 'application/json', 'Accept': 'application/json'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"SEFAZ proxy {payload['action']} failed: {e}")
            raise ExternalServiceError(f'SEFAZ proxy unreachable: {e}')

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code != 200 or not isinstance(body, dict):
            message = (body or {}).get('error') if isinstance(body, dict) else None
            logger.error(f"SEFAZ proxy {payload['action']} returned {response.status_code}: {response.text[:200]}")
            raise ExternalServiceError(
                message or f'SEFAZ proxy returned HTTP {response.status_code}',
                status_code=response.status_code,
            )

        if not body.get('success'):
            logger.error(f"SEFAZ proxy {payload['action']} refused: {body.get('error')}")
            raise ExternalServiceError(body.get('error') or 'SEFAZ proxy request failed')

        return body.get('data') or {}

    @staticmethod
    def _check_status(data, accepted):
        status_code = str(data.get('cStat') or '')
        if status_code not in accepted:
            message = data.get('xMotivo') or f'SEFAZ rejected the request (cStat {status_code or "missing"})'
            logger.error(f"SEFAZ cStat {status_code}: {message}")
            raise ExternalServiceError(message, service_status=status_code or None)
        return status_code

    def fetch_distribution(self, cnpj, uf, nsu=0):
        """One DistDFe page after ``nsu`` (ultNSU semantics)."""
        data = self._post({
            'action': ACTION_DISTRIBUTION,
            'cnpj': cnpj,
            'uf': uf,
            'nsu': str(nsu),
        })
        status_code = self._check_status(data, DISTRIBUTION_OK)

        documents = [
            DistributedDocument(
                nsu=int(entry['nsu']),
                schema=schema_kind(entry.get('schema')),
                xml=decode_doc_zip(entry['conteudo']),
            )
            for entry in data.get('documentos') or []
        ]
        last_nsu = int(data.get('ultNSU') or nsu)
        max_nsu = int(data.get('maxNSU') or last_nsu)

        logger.info(f"DistDFe {cnpj} after NSU {nsu}: cStat {status_code}, {len(documents)} documents, ultNSU {last_nsu}, maxNSU {max_nsu}")
        return DistributionBatch(status_code, data.get('xMotivo'), last_nsu, max_nsu, documents)

    def fetch_by_key(self, cnpj, uf, access_key):
        """Full procNFe XML for one access key."""
        data = self._post({
            'action': ACTION_BY_KEY,
            'cnpj': cnpj,
            'uf': uf,
            'chave': access_key,
        })
        self._check_status(data, DISTRIBUTION_OK)

        for entry in data.get('documentos') or []:
            if schema_kind(entry.get('schema')) == SCHEMA_FULL:
                return decode_doc_zip(entry['conteudo'])

        raise ExternalServiceError(f'full XML not available yet for access key {access_key}')

    def manifest(self, cnpj, uf, access_key, event_code, justification=None):
        data = self._post({
            'action': ACTION_MANIFEST,
            'cnpj': cnpj,
            'uf': uf,
            'chave': access_key,
            'tipoEvento': event_code,
            'justificativa': justification,
        })
        status_code = self._check_status(data, MANIFESTATION_OK)
        return ManifestationReceipt(status_code, data.get('xMotivo'), data.get('nProt'))
