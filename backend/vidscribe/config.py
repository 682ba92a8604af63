"""Application-wide configuration loader.

Every setting is read once from the environment when the module is imported and
exposed through the module-level ``settings`` singleton.  Services never import
``settings`` themselves; :mod:`vidscribe.bootstrap` reads it and passes plain
values into the constructors so tests can build services with their own values.
"""

import os


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Settings helper that gracefully falls back to sane defaults.

    When docker-compose injects an environment variable whose value is empty
    (e.g. ``NOTION_API_KEY=""``) ``os.getenv("NOTION_API_KEY", default)`` returns
    an empty string *not* ``None``.  We therefore use the idiom

        os.getenv(KEY) or DEFAULT

    so that *falsy* values ("", None) are replaced by the specified DEFAULT.
    """

    # Storage
    DATABASE_URL: str = os.getenv('DATABASE_URL') or 'sqlite:///./vidscribe.db'
    DB_ECHO: bool = _flag(os.getenv('DB_ECHO') or '0')

    # Queue
    QUEUE_BACKEND: str = os.getenv('QUEUE_BACKEND') or 'memory'
    CELERY_BROKER_URL: str = os.getenv('CELERY_BROKER_URL') or 'redis://broker:6379/0'
    CELERY_RESULT_BACKEND: str = os.getenv('CELERY_RESULT_BACKEND') or 'redis://broker:6379/0'
    MAX_CONCURRENT_JOBS: int = int(os.getenv('MAX_CONCURRENT_JOBS') or '1')
    JOB_MAX_ATTEMPTS: int = int(os.getenv('JOB_MAX_ATTEMPTS') or '3')
    JOB_RETRY_BASE_DELAY: float = float(os.getenv('JOB_RETRY_BASE_DELAY') or '2.0')
    STALLED_JOB_SECONDS: float = float(os.getenv('STALLED_JOB_SECONDS') or '900')
    JOB_RETENTION_DAYS: int = int(os.getenv('JOB_RETENTION_DAYS') or '30')

    # Audio extraction
    FFMPEG_PATH: str = os.getenv('FFMPEG_PATH') or 'ffmpeg'
    FFPROBE_PATH: str = os.getenv('FFPROBE_PATH') or 'ffprobe'
    FFMPEG_TIMEOUT_SECONDS: float = float(os.getenv('FFMPEG_TIMEOUT_SECONDS') or '600')
    TEMP_AUDIO_DIR: str = os.getenv('TEMP_AUDIO_DIR') or os.path.join(os.getcwd(), 'temp', 'audio')
    TEMP_AUDIO_MAX_AGE_HOURS: float = float(os.getenv('TEMP_AUDIO_MAX_AGE_HOURS') or '24')

    # Transcription provider (OpenAI Whisper API)
    OPENAI_API_KEY: str = os.getenv('OPENAI_API_KEY') or ''
    OPENAI_BASE_URL: str = os.getenv('OPENAI_BASE_URL') or 'https://api.openai.com/v1'
    WHISPER_MODEL: str = os.getenv('WHISPER_MODEL') or 'whisper-1'
    TRANSCRIPTION_TIMEOUT_SECONDS: float = float(os.getenv('TRANSCRIPTION_TIMEOUT_SECONDS') or '60')
    TRANSCRIPTION_MAX_RETRIES: int = int(os.getenv('TRANSCRIPTION_MAX_RETRIES') or '3')
    TRANSCRIPTION_RETRY_BASE_DELAY: float = float(os.getenv('TRANSCRIPTION_RETRY_BASE_DELAY') or '1.0')
    TRANSCRIPTION_REQUESTS_PER_SECOND: float = float(os.getenv('TRANSCRIPTION_REQUESTS_PER_SECOND') or '3')
    MAX_AUDIO_FILE_BYTES: int = int(os.getenv('MAX_AUDIO_FILE_BYTES') or str(25 * 1024 * 1024))

    # External document workspace (Notion)
    NOTION_API_KEY: str = os.getenv('NOTION_API_KEY') or ''
    NOTION_DATABASE_ID: str = os.getenv('NOTION_DATABASE_ID') or ''
    NOTION_BASE_URL: str = os.getenv('NOTION_BASE_URL') or 'https://api.notion.com/v1'
    NOTION_VERSION: str = os.getenv('NOTION_VERSION') or '2022-06-28'
    NOTION_REQUESTS_PER_SECOND: float = float(os.getenv('NOTION_REQUESTS_PER_SECOND') or '3')

    # Logging
    LOG_DIR: str = os.getenv('LOG_DIR') or 'backend/logs'
    LOG_LEVEL: str = (os.getenv('LOG_LEVEL') or 'INFO').upper()

    @property
    def notion_enabled(self) -> bool:
        return bool(self.NOTION_API_KEY)


settings = Settings()
