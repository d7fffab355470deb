from environs import Env
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

env = Env()
env.read_env(BASE_DIR / '.env')

APP_ENV = env.str('APP_ENV', 'local')

SECRET_KEY = env.str('APP_SECRET_KEY', 'change-me')

DEBUG = APP_ENV != 'production'

ALLOWED_HOSTS = env.list('ALLOWED_HOSTS', default=['*'])

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'qrpay.apps.QRPayConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'core.wsgi.application'


DATABASE_ENGINE = env.str('DATABASE_ENGINE', 'django.db.backends.sqlite3')

if 'postgresql' in DATABASE_ENGINE:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('PGSQL_DATABASE', 'qrpay'),
            'USER': env.str('PGSQL_USER', 'postgres'),
            'PASSWORD': env.str('PGSQL_PASSWORD', 'mysecretpassword'),
            'HOST': env.str('PGSQL_HOST', 'localhost'),
            'PORT': env.int('PGSQL_PORT', 5432),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': DATABASE_ENGINE,
            'NAME': env.str('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-us'

TIME_ZONE = 'UTC'

USE_I18N = True

USE_TZ = True


STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'static'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
}

QRPAY_SESSION_TTL_MINUTES = env.int('QRPAY_SESSION_TTL_MINUTES', 30)
QRPAY_PRICE_CACHE_SECONDS = env.int('QRPAY_PRICE_CACHE_SECONDS', 30)
QRPAY_PRICE_REFRESH_SECONDS = env.int('QRPAY_PRICE_REFRESH_SECONDS', 30)
QRPAY_PRICE_REFRESH_AUTOSTART = env.bool('QRPAY_PRICE_REFRESH_AUTOSTART', False)
QRPAY_PRICE_NETWORK = env.str('QRPAY_PRICE_NETWORK', 'polygon')
QRPAY_DEFAULT_RATE = env.str('QRPAY_DEFAULT_RATE', '1000')
QRPAY_WALLET_ENCRYPTION_KEY = env.str('QRPAY_WALLET_ENCRYPTION_KEY', '')

QRPAY_NETWORKS = {
    'polygon': {
        'rpc_url': env.str('POLYGON_RPC_URL', 'https://polygon-rpc.com'),
        'gateway_address': env.str(
            'POLYGON_PAYMENT_GATEWAY_ADDRESS',
            '0x52a83a44aa073C0a423f914A6c824DA640ED2F6A'),
        'oracle_address': env.str(
            'POLYGON_ORACLE_ADDRESS',
            '0x2eF8D1930b1d20504445943A18d6F70e7ce6ABbe'),
        'token_address': env.str(
            'POLYGON_USDC_ADDRESS',
            '0xC37c16139a8eFC8f4c2B7CAA5C607514C825FC4C'),
        'signer_private_key': env.str('POLYGON_ADMIN_PRIVATE_KEY', ''),
        'gas_limit': env.int('POLYGON_GAS_LIMIT', 250000),
        'tx_timeout_seconds': env.int('POLYGON_TX_TIMEOUT_SECONDS', 120),
        'rpc_timeout_seconds': env.int('POLYGON_RPC_TIMEOUT_SECONDS', 15),
        'max_fee_per_gas_wei': env.int('POLYGON_MAX_FEE_PER_GAS_WEI', 0),
        'max_priority_fee_per_gas_wei': env.int(
            'POLYGON_MAX_PRIORITY_FEE_PER_GAS_WEI', 0),
    },
    'optimism': {
        'rpc_url': env.str('OPTIMISM_RPC_URL', 'https://mainnet.optimism.io'),
        'gateway_address': env.str(
            'OPTIMISM_PAYMENT_GATEWAY_ADDRESS',
            '0xea0964D086616e1BDae08802DB350ec3b7cB53B8'),
        'oracle_address': env.str(
            'OPTIMISM_ORACLE_ADDRESS',
            '0xC37c16139a8eFC8f4c2B7CAA5C607514C825FC4C'),
        'token_address': env.str(
            'OPTIMISM_USDC_ADDRESS',
            '0x3d127a80655e4650D97e4499217dC8c083A39242'),
        'signer_private_key': env.str('OPTIMISM_ADMIN_PRIVATE_KEY', ''),
        'gas_limit': env.int('OPTIMISM_GAS_LIMIT', 250000),
        'tx_timeout_seconds': env.int('OPTIMISM_TX_TIMEOUT_SECONDS', 120),
        'rpc_timeout_seconds': env.int('OPTIMISM_RPC_TIMEOUT_SECONDS', 15),
        'max_fee_per_gas_wei': env.int('OPTIMISM_MAX_FEE_PER_GAS_WEI', 0),
        'max_priority_fee_per_gas_wei': env.int(
            'OPTIMISM_MAX_PRIORITY_FEE_PER_GAS_WEI', 0),
    },
}
