"""
WSGI entry point for running behind gunicorn or another WSGI server

The external server owns the socket and TLS, so only the upload folder
and the optional size cap are configured here:
  UPLOAD_DIR     folder to store and list files in (default: ./files)
  MAX_UPLOAD_MB  reject request bodies larger than this
"""
import os

from app import create_app
from config import build_config

_max_mb = os.environ.get('MAX_UPLOAD_MB')

config = build_config(
    folder=os.environ.get('UPLOAD_DIR', 'files'),
    qr=False,
    max_content_length=int(_max_mb) * 1024 * 1024 if _max_mb else None,
)

# Re-export the Flask app object for gunicorn
app = create_app(config)
