import pytest
from flask import Flask, g
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

from app import create_app, db
from app.models import Company, Material, Supplier, User
from config import Config
from nfe_samples import RECIPIENT_CNPJ, SUPPLIER_CNPJ, FakeSefazClient


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    RATELIMIT_ENABLED = False
    SECRET_KEY = 'test-secret'
    SEFAZ_PROXY_URL = 'http://sefaz-proxy.test/functions/v1/sefaz-proxy'


@pytest.fixture
def app():
    app = create_app(TestConfig)

    @app.teardown_request
    def forget_request_user(exc):
        # Test requests reuse the fixture's app context, and with it ``g``
        g.pop('_login_user', None)

    with app.app_context():
        db.drop_all()
        db.create_all()
        test_user = User(
            username='fiscal',
            email='fiscal@example.com',
            password=generate_password_hash('test123'),
            role='fiscal'
        )
        db.session.add(test_user)
        db.session.commit()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    return app.test_client()


@pytest.fixture
def auth_client(client: FlaskClient) -> FlaskClient:
    client.post('/auth/login', json={
        'email': 'fiscal@example.com',
        'password': 'test123'
    })
    return client


@pytest.fixture
def sefaz(app):
    fake = FakeSefazClient()
    app.extensions['sefaz_client'] = fake
    return fake


@pytest.fixture
def supplier(app):
    # Stored formatted; matching is by digits only
    supplier = Supplier(code='F001', name='FORNECEDOR TESTE LTDA', cnpj='12.345.678/0001-90')
    db.session.add(supplier)
    db.session.commit()
    assert supplier.cnpj.replace('.', '').replace('/', '').replace('-', '') == SUPPLIER_CNPJ
    return supplier


@pytest.fixture
def materials(app):
    screw = Material(code='MAT-001', description='PARAFUSO SEXTAVADO M8 ZINCADO', ean='7891234567895', ncm='73181500', unit='UN')
    washer = Material(code='MAT-002', description='ARRUELA LISA M8', ncm='73182200', unit='UN')
    db.session.add_all([screw, washer])
    db.session.commit()
    return screw, washer


@pytest.fixture
def company(app):
    company = Company(name='EMPRESA COMPRADORA SA', cnpj='98.765.432/0001-10', uf='SP')
    db.session.add(company)
    db.session.commit()
    assert company.cnpj.replace('.', '').replace('/', '').replace('-', '') == RECIPIENT_CNPJ
    return company
