"""
Global pytest configuration for Vilo Platform tests.
"""

import os

# Keep tests off any configured PostgreSQL/Redis before settings are imported
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CELERY__BROKER_URL", "memory://")
os.environ.setdefault("CELERY__RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("TESTING", "true")
