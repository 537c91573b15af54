"""Console and dated-file logging for pipeline runs."""
import logging
import logging.handlers
from datetime import datetime, timedelta
from pathlib import Path


def setup_logging(log_dir: Path | None, retention_days: int = 30, verbose: bool = False):
    """Route run logs to the console, and to a daily file under ``log_dir`` when set.

    The file always records DEBUG. The console shows DEBUG only with ``verbose``.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # repeated CLI invocations in one process reconfigure from scratch
    root_logger.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        cleanup_old_logs(log_dir, retention_days)

        log_file = log_dir / f"{datetime.now().strftime('%Y-%m-%d')}.log"
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s %(message)s', datefmt='%H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    # urllib3 connection chatter drowns the stage logs at DEBUG
    logging.getLogger("urllib3").setLevel(logging.INFO)

    return root_logger


def cleanup_old_logs(log_dir: Path, retention_days: int):
    """Remove dated run logs past the retention window; other files are left alone."""
    if not log_dir.exists():
        return

    cutoff_date = datetime.now() - timedelta(days=retention_days)

    for log_file in log_dir.glob('*.log'):
        try:
            file_date = datetime.strptime(log_file.stem, '%Y-%m-%d')
            if file_date < cutoff_date:
                log_file.unlink()
                logging.debug(f"[LOGS] Pruned {log_file.name} (older than {retention_days} days)")
        except (ValueError, OSError):
            continue
