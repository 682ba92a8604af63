# Environment defaults for the test run; set before vidscribe.config is imported
from __future__ import annotations

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="vidscribe-tests-")

# In-memory job store and no external services unless a test opts in
os.environ.setdefault("DATABASE_URL", "memory")
os.environ.setdefault("DB_ECHO", "0")
os.environ.setdefault("QUEUE_BACKEND", "memory")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("TEMP_AUDIO_DIR", os.path.join(_TMP, "audio"))
os.environ["OPENAI_API_KEY"] = ""
os.environ["NOTION_API_KEY"] = ""
