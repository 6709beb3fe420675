"""
SMS Nudge Configuration
Loads settings from environment variables with sensible defaults.
"""

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env file
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)


class Config:
    """Application configuration."""

    # Database: must be set in .env
    DATABASE_URL = os.getenv('DATABASE_URL')
    if not DATABASE_URL:
        _logger.critical("DATABASE_URL is not set, cannot start. Copy .env.example to .env and configure it.")
        raise ValueError("DATABASE_URL environment variable is not set. Copy .env.example to .env and configure it.")

    # Timezone used to decide what "today" is for an account
    TIMEZONE = os.getenv('TIMEZONE', 'America/Toronto')

    # Scoring
    MAX_RECENCY_SCORE = int(os.getenv('MAX_RECENCY_SCORE', '240'))
    OVERDUE_POINTS_PER_DAY = float(os.getenv('OVERDUE_POINTS_PER_DAY', '5'))
    HOLIDAY_BOOST_AMOUNT = int(os.getenv('HOLIDAY_BOOST_AMOUNT', '50'))
    HOLIDAY_BUFFER_DAYS = int(os.getenv('HOLIDAY_BUFFER_DAYS', '14'))

    # Selection
    SMS_COOLDOWN_DAYS = int(os.getenv('SMS_COOLDOWN_DAYS', '14'))
    MASS_LOOKBACK_MONTHS = int(os.getenv('MASS_LOOKBACK_MONTHS', '18'))
    DEFAULT_PREVIEW_LIMIT = int(os.getenv('DEFAULT_PREVIEW_LIMIT', '50'))

    # Auto-nudge (weekly batches)
    AUTO_NUDGE_MIN_DAYS_OVERDUE = int(os.getenv('AUTO_NUDGE_MIN_DAYS_OVERDUE', '14'))
    AUTO_NUDGE_BATCH_SIZE = int(os.getenv('AUTO_NUDGE_BATCH_SIZE', '10'))
    # Used in months with five Mondays so the monthly total stays under the cap
    AUTO_NUDGE_REDUCED_BATCH_SIZE = int(os.getenv('AUTO_NUDGE_REDUCED_BATCH_SIZE', '8'))
    AUTO_NUDGE_PRIORITY_SHARE = float(os.getenv('AUTO_NUDGE_PRIORITY_SHARE', '0.9'))


# Singleton instance
config = Config()
