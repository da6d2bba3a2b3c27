"""
Root conftest.py: makes the backend modules importable without installing the package.

Loaded before test collection, so it also points the data directory at a
throwaway location before config.paths is first imported.
"""
import os
import sys
import tempfile

BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

os.environ.setdefault('CCSERVER_DATA_DIR', tempfile.mkdtemp(prefix='ccserver-test-'))
