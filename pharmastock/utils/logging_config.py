"""
Log file setup for the ledger.

Every module logs through ``logging.getLogger(__name__)``, so all records
end up under the ``pharmastock`` logger. setup_logging() gives that logger
a daily, size-rotated file (warnings and above by default) and echoes only
CRITICAL records to the console. Library code never calls it; entry points
such as the ``pharmastock-db`` CLI do.
"""
import logging
import logging.handlers
from pathlib import Path
from datetime import datetime

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logging(
    log_dir: "str | Path | None" = None,
    app_name: str = "pharmastock",
    file_level: int = logging.WARNING,
) -> logging.Logger:
    """
    Attach file and console handlers to the ``app_name`` logger.

    Calling it again returns the already configured logger unchanged.

    Args:
        log_dir: Where ``<app_name>_YYYYMMDD.log`` is written; defaults to
            the ledger's logs directory
        app_name: Logger to configure (parent of the module loggers)
        file_level: Lowest level written to the file
    """
    if log_dir is None:
        from .paths import get_logs_dir  # noqa: PLC0415
        log_dir = get_logs_dir()
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(app_name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)

    log_file = log_path / f"{app_name}_{datetime.now():%Y%m%d}.log"
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding='utf-8',
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.CRITICAL)
    console_handler.setFormatter(logging.Formatter('CRITICAL: %(message)s'))
    logger.addHandler(console_handler)

    return logger
