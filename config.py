import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///fiscal.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SECRET_KEY = os.getenv('SECRET_KEY', 'change-me')
    SESSION_COOKIE_NAME = 'session'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=1)
    SESSION_COOKIE_DOMAIN = None
    JWT_EXPIRATION_MINUTES = int(os.getenv('JWT_EXPIRATION_MINUTES', 90))

    RATELIMIT_DEFAULT = os.getenv('RATELIMIT_DEFAULT', '2000 per day;500 per hour')
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

    # Distribution / manifestation proxy for the SEFAZ web services
    SEFAZ_PROXY_URL = os.getenv('SEFAZ_PROXY_URL')
    SEFAZ_AMBIENTE = os.getenv('SEFAZ_AMBIENTE', 'homologacao')  # 'homologacao' | 'producao'
    SEFAZ_TIMEOUT = int(os.getenv('SEFAZ_TIMEOUT', 30))
    SEFAZ_CERT_PEM = os.getenv('SEFAZ_CERT_PEM')
    SEFAZ_KEY_PEM = os.getenv('SEFAZ_KEY_PEM')

    NFE_LOG_DIR = os.getenv('NFE_LOG_DIR', '/var/log/fiscal')
