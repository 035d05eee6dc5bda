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

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
PAYMENTS_ADMIN_EMAILS = 'ops@example.com'

RAZORPAY_KEY_ID = 'rzp_test_key'
RAZORPAY_KEY_SECRET = 'test-key-secret'
RAZORPAY_WEBHOOK_SECRET = 'test-webhook-secret'
RAZORPAY_BASE_URL = 'https://gateway.test/v1'

PAYMENTS_WRITE_BACKOFF_SECONDS = 0
