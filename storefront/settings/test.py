from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

EPS = {
    'BASE_URL': 'https://eps.example.com/v1',
    'MERCHANT_ID': 'merchant-1',
    'STORE_ID': 'store-1',
    'USERNAME': 'shop@example.com',
    'PASSWORD': 'secret-password',
    'HASH_KEY': 'hash-key',
    'TIMEOUT': 5,
    'TRUST_STATUS_PARAM': False,
}

ORDERS_COMMISSION_HANDLER = None
ORDERS_NOTIFICATION_HANDLER = None
