import os

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here-make-it-long'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'vsla.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Accounting rules
    VSLA_INTEREST_POLICY = os.environ.get('VSLA_INTEREST_POLICY', 'flat')  # 'flat' or 'monthly'
    VSLA_CURRENCY = os.environ.get('VSLA_CURRENCY', 'UGX')
    VSLA_DEFAULT_SHARE_PRICE = os.environ.get('VSLA_DEFAULT_SHARE_PRICE')
    VSLA_MAX_INTEREST_RATE = float(os.environ.get('VSLA_MAX_INTEREST_RATE', 100))
    VSLA_MAX_LOAN_DURATION = int(os.environ.get('VSLA_MAX_LOAN_DURATION', 120))  # months

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_TO_FILE = os.environ.get('LOG_TO_FILE', 'false').lower() in ('1', 'true', 'yes')
    LOG_DIR = os.environ.get('LOG_DIR', os.path.join(basedir, 'logs'))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    LOG_LEVEL = 'WARNING'
    LOG_TO_FILE = False
