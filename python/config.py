# Shared configuration for the OLTP -> OLAP pipeline
import os

SOURCE_DB_CONFIG = {
    'user': os.getenv('SOURCE_DB_USER', 'root'),
    'password': os.getenv('SOURCE_DB_PASSWORD', 'root'),
    'host': os.getenv('SOURCE_DB_HOST', '127.0.0.1'),
    'port': os.getenv('SOURCE_DB_PORT', '3306'),
    'db': os.getenv('SOURCE_DB_NAME', 'healthtech_oltp'),
}

TARGET_DB_CONFIG = {
    'user': os.getenv('TARGET_DB_USER', 'root'),
    'password': os.getenv('TARGET_DB_PASSWORD', 'root'),
    'host': os.getenv('TARGET_DB_HOST', '127.0.0.1'),
    'port': os.getenv('TARGET_DB_PORT', '3306'),
    'db': os.getenv('TARGET_DB_NAME', 'healthtech_olap'),
}

STAGING_DIR = os.getenv('STAGING_DIR', os.path.join('.', 'Data', 'staging'))

# Optional BigQuery mirror of the published star schema
PUBLISH_TO_BIGQUERY = os.getenv('PUBLISH_TO_BIGQUERY', 'false').lower() in ('1', 'true', 'yes')
BIGQUERY_PROJECT_ID = os.getenv('BIGQUERY_PROJECT_ID', 'healthtech-olap-project')
BIGQUERY_DATASET_ID = os.getenv('BIGQUERY_DATASET_ID', 'healthtech_olap')
BIGQUERY_KEY_FILE_PATH = os.getenv('BIGQUERY_KEY_FILE_PATH', '')

# Refuse to start while another run is still RUNNING
ENFORCE_SINGLE_RUN = os.getenv('ENFORCE_SINGLE_RUN', 'false').lower() in ('1', 'true', 'yes')

READMISSION_WINDOW_DAYS = 30
INPATIENT_ENCOUNTER_TYPE = 'INPATIENT'
UNKNOWN_CREDENTIAL = 'UNKNOWN'

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(filename)s] - %(message)s'


def build_connection_url(config: dict) -> str:
    """Builds a SQLAlchemy URL from a DB config dict (or returns an explicit URL override)."""
    if config.get('url'):
        return config['url']
    return (f"mysql+mysqlconnector://{config['user']}:{config['password']}"
            f"@{config['host']}:{config['port']}/{config['db']}")


if os.getenv('SOURCE_DB_URL'):
    SOURCE_DB_CONFIG['url'] = os.getenv('SOURCE_DB_URL')
if os.getenv('TARGET_DB_URL'):
    TARGET_DB_CONFIG['url'] = os.getenv('TARGET_DB_URL')
