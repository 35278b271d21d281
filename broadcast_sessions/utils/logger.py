import logging
from logging import handlers
from pathlib import Path
from typing import Dict
import gzip
import os
import sys
from datetime import datetime, timezone

# Cache for loggers to avoid duplicate creation
_logger_cache: Dict[str, logging.Logger] = {}


def load_config():
    """Load config - uses centralized config module."""
    from .config import load_config as _load_config
    return _load_config()


class RotatingFileHandlerWithCompression(handlers.RotatingFileHandler):
    """Rotating file handler that compresses old log files"""
    def emit(self, record):
        try:
            # Check if Python is shutting down
            if not sys or not sys.modules:
                return
            super().emit(record)
        except Exception:
            self.handleError(record)

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None
        if self.backupCount > 0:
            for i in range(self.backupCount - 1, 0, -1):
                sfn = self.rotation_filename("%s.%d.gz" % (self.baseFilename, i))
                dfn = self.rotation_filename("%s.%d.gz" % (self.baseFilename, i + 1))
                if os.path.exists(sfn):
                    if os.path.exists(dfn):
                        os.remove(dfn)
                    os.rename(sfn, dfn)
            dfn = self.rotation_filename(self.baseFilename + ".1.gz")
            if os.path.exists(dfn):
                os.remove(dfn)
            # Compress the current log file
            with open(self.baseFilename, 'rb') as f_in:
                with gzip.open(dfn, 'wb') as f_out:
                    f_out.writelines(f_in)
        self.mode = 'w'
        self.stream = self._open()


class PipelineLogFormatter(logging.Formatter):
    """Formatter for pipeline logs: UTC timestamp, short logger name, level, message"""
    def format(self, record):
        try:
            timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
            logger_name = record.name.split('.')[-1] if '.' in record.name else record.name
            message = f"{timestamp} [{logger_name}] [{record.levelname}] {record.getMessage()}"
            if record.exc_info:
                message = f"{message}\n{self.formatException(record.exc_info)}"
            return message
        except Exception:
            return record.getMessage()


def setup_worker_logger(component: str) -> logging.Logger:
    """Set up a component logger with a rotating file and console output.

    Args:
        component: Component name (e.g. 'finalize_sessions', 'segment_builder')
    """
    logger_name = f"broadcast_sessions.{component}"

    # Return cached logger if it exists
    if logger_name in _logger_cache:
        return _logger_cache[logger_name]

    try:
        config = load_config()
        log_config = config.get('logging', {})
        log_dir = Path(log_config.get('base_path', 'logs'))
        log_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO))

        # Remove any existing handlers
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        fh = RotatingFileHandlerWithCompression(
            str(log_dir / f"{component}.log"),
            maxBytes=10*1024*1024,
            backupCount=5
        )
        fh.setFormatter(PipelineLogFormatter())
        logger.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setFormatter(PipelineLogFormatter())
        logger.addHandler(ch)

        # Handlers are attached here; don't double print through root
        logger.propagate = False

        _logger_cache[logger_name] = logger
        return logger

    except Exception:
        # Fallback to basic console logging
        fallback = logging.getLogger(f"fallback.{logger_name}")
        fallback.setLevel(logging.INFO)
        if not fallback.handlers:
            ch = logging.StreamHandler()
            ch.setFormatter(logging.Formatter('%(message)s'))
            fallback.addHandler(ch)
        return fallback


def configure_noise_suppression():
    """Suppress noisy third-party loggers while keeping warnings visible."""
    logging.getLogger('uvicorn.access').setLevel(logging.ERROR)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def setup_pipeline_logging(log_dir: Path = None) -> logging.Logger:
    """Attach file and console handlers to the package logger.

    Module loggers (``logging.getLogger(__name__)``) under broadcast_sessions
    propagate here, so entrypoints call this once at startup.
    """
    package_logger = logging.getLogger('broadcast_sessions')
    if getattr(package_logger, '_pipeline_configured', False):
        return package_logger

    config = load_config()
    log_config = config.get('logging', {})
    if log_dir is None:
        log_dir = Path(log_config.get('base_path', 'logs'))
    package_logger.setLevel(getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO))

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandlerWithCompression(
            str(log_dir / "pipeline.log"),
            maxBytes=50*1024*1024,
            backupCount=10
        )
        fh.setFormatter(PipelineLogFormatter())
        package_logger.addHandler(fh)
    except OSError as e:
        print(f"Warning: Could not create log file handler in {log_dir}: {e}")

    ch = logging.StreamHandler()
    ch.setFormatter(PipelineLogFormatter())
    package_logger.addHandler(ch)

    package_logger._pipeline_configured = True
    return package_logger
