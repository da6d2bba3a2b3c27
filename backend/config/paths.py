"""
Centralized path configuration for the command server
Ensures all modules use consistent, volume-mounted paths
"""

import os

# The /app/data directory is mounted as a volume when running in a container
DATA_DIR = os.getenv('CCSERVER_DATA_DIR', '/app/data')

# For development/testing outside a container
if 'CCSERVER_DATA_DIR' not in os.environ and not os.path.exists('/app'):
    DATA_DIR = './data'

DATABASE_PATH = os.path.join(DATA_DIR, 'ccserver.db')
DATABASE_URL = f'sqlite:///{DATABASE_PATH}'

LOG_DIR = os.path.join(DATA_DIR, 'logs')

# Signing secret for agent credentials and the generated operator key
SECRET_FILE = os.path.join(DATA_DIR, '.agent_secret')
OPERATOR_KEY_FILE = os.path.join(DATA_DIR, 'operator_api_key.txt')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments
