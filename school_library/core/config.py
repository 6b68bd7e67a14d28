# school_library/core/config.py
import os
import sys
import logging
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

project_root = Path(__file__).resolve().parent.parent.parent
dotenv_path = project_root / ".env"

# --- Load .env if present ---
if dotenv_path.is_file():
    logger.info(f"Loading environment variables from: {dotenv_path}")
    load_dotenv(dotenv_path=dotenv_path, override=False)
else:
    logger.debug(f".env file not found at {dotenv_path}. Relying on system environment variables.")


# --- Intercept Handler (route stdlib logging into Loguru) ---
class InterceptHandler(logging.Handler):
    """Forwards records from the standard logging module to Loguru."""
    def emit(self, record: logging.LogRecord) -> None:
        try: level = logger.level(record.levelname).name
        except ValueError: level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure Loguru sinks and intercept standard logging."""
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    log_file_path = Path(os.getenv("LOG_FILE_PATH", "logs/library_{time:YYYY-MM-DD}.log"))
    log_rotation = os.getenv("LOG_ROTATION", "1 day")
    log_retention = os.getenv("LOG_RETENTION", "7 days")
    log_serialize = os.getenv("LOG_SERIALIZE", "False").lower() == "true"

    logger.remove()

    # Console
    logger.add(sys.stderr, level=log_level_name, format=log_format, colorize=True)

    # File
    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file_path,
            level=log_level_name,
            format=log_format,
            rotation=log_rotation,
            retention=log_retention,
            serialize=log_serialize,
            enqueue=True,
            backtrace=True,
            diagnose=False,
            encoding="utf-8"
        )
        logger.info(f"File logging enabled at: {log_file_path}")
    except Exception as e:
        logger.error(f"Failed to setup file logging at {log_file_path}: {e}")

    # --- Intercept standard logging ---
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(("uvicorn", "fastapi", "starlette", "apscheduler")):
            existing_logger = logging.getLogger(name)
            existing_logger.handlers = [InterceptHandler()]
            existing_logger.propagate = False

    logger.info(f"Loguru logging setup complete. Level: {log_level_name}")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}. Using default: {default}.")
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name}. Using default: {default}.")
        return default


# --- Database Configuration ---
MONGODB_URL: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017/school_library")

_default_db_name = "school_library"
_hosts_and_path = MONGODB_URL.split("://", 1)[-1]
if "/" in _hosts_and_path:
    _path_part = _hosts_and_path.split("/", 1)[1].split("?")[0]
    if _path_part: _default_db_name = _path_part
DATABASE_NAME: str = os.getenv("DATABASE_NAME", _default_db_name)

# "mongo" for MongoDB via Motor/Beanie, "memory" for a single-process store
STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "mongo").lower()

# --- Circulation Configuration ---
LIB_DAILY_FINE_RATE: float = _env_float("LIB_DAILY_FINE_RATE", 1.0)
LIB_MAX_RENEWALS: int = _env_int("LIB_MAX_RENEWALS", 2)
LIB_RENEWAL_DAYS: int = _env_int("LIB_RENEWAL_DAYS", 14)
LIB_REPLACEMENT_COST: float = _env_float("LIB_REPLACEMENT_COST", 25.0)
LIB_DAMAGE_COST: float = _env_float("LIB_DAMAGE_COST", 15.0)
LIB_DEFAULT_BORROW_LIMIT: int = _env_int("LIB_DEFAULT_BORROW_LIMIT", 3)
LIB_MAX_BORROW_DAYS: int = _env_int("LIB_MAX_BORROW_DAYS", 90)

# --- Scheduler Configuration ---
OVERDUE_SWEEP_HOUR: int = _env_int("OVERDUE_SWEEP_HOUR", 2)
SCHEDULER_TIMEZONE: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")

logger.debug(f"Database Name: {DATABASE_NAME}, storage backend: {STORAGE_BACKEND}")
logger.debug(
    f"Circulation config: fine/day={LIB_DAILY_FINE_RATE}, max renewals={LIB_MAX_RENEWALS}, "
    f"renewal days={LIB_RENEWAL_DAYS}, replacement={LIB_REPLACEMENT_COST}, damage={LIB_DAMAGE_COST}"
)
