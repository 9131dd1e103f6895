import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Settlement engine configuration settings"""
    
    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///arena.db')
    
    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    
    # Notification fan-out
    REDIS_URL = os.getenv('REDIS_URL')
    NOTIFICATION_CHANNEL = os.getenv('NOTIFICATION_CHANNEL', 'arena:notifications')
    NOTIFICATION_QUEUE_SIZE = int(os.getenv('NOTIFICATION_QUEUE_SIZE', 1000))
    NOTIFICATION_RETENTION_DAYS = int(os.getenv('NOTIFICATION_RETENTION_DAYS', 30))
    
    TREASURY_USERNAME = os.getenv('TREASURY_USERNAME', 'platform-treasury')
    
    # Elo calculation settings
    DEFAULT_ELO = 1000
    MIN_ELO = 100
    K_FACTOR_NEW_PLAYER = 40   # Fewer than NEW_PLAYER_THRESHOLD games
    K_FACTOR_STANDARD = 32     # All subsequent games
    NEW_PLAYER_THRESHOLD = 30
    
    # Settlement settings
    PLATFORM_FEE_PERCENTAGE = float(os.getenv('PLATFORM_FEE_PERCENTAGE', 0.10))
    
    # Dispute settings
    DISPUTE_WINDOW_HOURS = int(os.getenv('DISPUTE_WINDOW_HOURS', 48))
    DISPUTE_SWEEP_INTERVAL_MINUTES = int(os.getenv('DISPUTE_SWEEP_INTERVAL_MINUTES', 15))
    
    @classmethod
    def validate(cls):
        """Validate that configuration values are usable"""
        if not cls.DATABASE_URL:
            raise ValueError("DATABASE_URL is required")
        if not 0 <= cls.PLATFORM_FEE_PERCENTAGE < 1:
            raise ValueError("PLATFORM_FEE_PERCENTAGE must be in [0, 1)")
        if cls.DISPUTE_WINDOW_HOURS <= 0:
            raise ValueError("DISPUTE_WINDOW_HOURS must be positive")
        if cls.DISPUTE_SWEEP_INTERVAL_MINUTES <= 0:
            raise ValueError("DISPUTE_SWEEP_INTERVAL_MINUTES must be positive")
