import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', '0') == '1'
ALLOWED_HOSTS = ['*']

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'clinic',
]

MIDDLEWARE = [
    'django.middleware.common.CommonMiddleware',
]

# 持久化全部走 clinic.store（单表 key-value），不用 ORM
DATABASES = {}

USE_TZ = True
TIME_ZONE = 'UTC'

# REST Framework
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ],
    'EXCEPTION_HANDLER': 'clinic.exception_handler.unified_exception_handler',
}

# Storage
CLINIC_STORE_BACKEND = os.getenv('CLINIC_STORE_BACKEND', 'memory')   # memory | redis
REDIS_URL = os.getenv('REDIS_URL', 'redis://localhost:6379/0')
CLINIC_TABLE_NAME = os.getenv('CLINIC_TABLE_NAME', 'dental-clinic')
CLINIC_REDIS_WATCH_RETRIES = int(os.getenv('CLINIC_REDIS_WATCH_RETRIES', '5'))
# 读操作遇到暂时性存储错误：最多 3 次，指数退避 0.05s → 0.1s
CLINIC_STORAGE_RETRY_ATTEMPTS = int(os.getenv('CLINIC_STORAGE_RETRY_ATTEMPTS', '3'))
CLINIC_STORAGE_RETRY_BASE_DELAY = float(os.getenv('CLINIC_STORAGE_RETRY_BASE_DELAY', '0.05'))

# Clinic
CLINIC_TIME_ZONE = os.getenv('CLINIC_TIME_ZONE', 'Asia/Kolkata')
CLINIC_PHONE_COUNTRY_CODE = os.getenv('CLINIC_PHONE_COUNTRY_CODE', '91')

# Policies（见 clinic/policies.py）
CLINIC_DOCTOR_BUSY_LOCK = os.getenv('CLINIC_DOCTOR_BUSY_LOCK', '0') == '1'
CLINIC_RECEPTION_NOTES_POLICY = os.getenv('CLINIC_RECEPTION_NOTES_POLICY', 'shared')   # shared | reception_only
CLINIC_ALLOW_OFFLINE_SKIP = os.getenv('CLINIC_ALLOW_OFFLINE_SKIP', '1') == '1'

# Logging
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'clinic': {
            'level': os.getenv('LOG_LEVEL', 'DEBUG' if DEBUG else 'INFO'),
        },
    },
}
