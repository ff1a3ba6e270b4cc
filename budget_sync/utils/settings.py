"""
Process settings

Everything tunable comes from the environment (or a .env file), read once at
startup into a frozen Settings object that is passed to whoever needs it.
"""
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    staging_dir: str = '/tmp/budget-sync-imports'
    staging_retention_days: int = 7
    max_concurrent_jobs: int = 5
    shutdown_grace_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 5.0
    min_confidence: float = 0.7
    timezone: str = 'America/New_York'
    log_level: str = 'INFO'


def load_settings() -> Settings:
    """Build Settings from environment variables"""
    return Settings(
        staging_dir=os.getenv('SYNC_STAGING_DIR', '/tmp/budget-sync-imports'),
        staging_retention_days=int(os.getenv('SYNC_STAGING_RETENTION_DAYS', '7')),
        max_concurrent_jobs=int(os.getenv('SYNC_MAX_CONCURRENT_JOBS', '5')),
        shutdown_grace_seconds=float(os.getenv('SYNC_SHUTDOWN_GRACE_SECONDS', '30')),
        max_retries=int(os.getenv('SYNC_MAX_RETRIES', '3')),
        retry_base_delay=float(os.getenv('SYNC_RETRY_BASE_DELAY', '5')),
        min_confidence=float(os.getenv('SYNC_MIN_CONFIDENCE', '0.70')),
        timezone=os.getenv('SYNC_TIMEZONE', 'America/New_York'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )


def configure_logging(level: str = 'INFO'):
    """Root logging setup for CLI entry points"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)-8s %(name)s: %(message)s',
    )
