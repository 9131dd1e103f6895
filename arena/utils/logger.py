import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from arena.config import Config

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _daily_file_handler(formatter: logging.Formatter) -> Optional[logging.Handler]:
    """File handler writing to LOG_DIR/arena_settlement_YYYYMMDD.log; None when LOG_DIR is empty"""
    if not Config.LOG_DIR:
        return None

    log_dir = Path(Config.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(
        log_dir / f'arena_settlement_{datetime.now().strftime("%Y%m%d")}.log',
        encoding='utf-8'
    )
    # Settlement audit detail always goes to file
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logger(name: str) -> logging.Logger:
    """Get a module logger with console and dated file output"""
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    log_level = logging.DEBUG if Config.DEBUG else logging.INFO
    logger.setLevel(logging.DEBUG)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    file_handler = _daily_file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    return logger
