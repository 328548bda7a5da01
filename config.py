"""
Application configuration.

All settings come from environment variables so the same build can run
locally, in tests and in a container.
"""
import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Media storage (served under STATIC_URL_PREFIX)
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
STATIC_URL_PREFIX = os.getenv("STATIC_URL_PREFIX", "/static")
FFPROBE_TIMEOUT = float(os.getenv("FFPROBE_TIMEOUT", "10"))

# Pagination defaults
DEFAULT_PAGE = int(os.getenv("DEFAULT_PAGE", "1"))
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
