# logging_config.py

import os
import re
import sys
import logging
import logging.handlers
from pathlib import Path
from pythonjsonlogger import jsonlogger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

CONTEXT_FIELDS = ("service_name", "audit_id", "batch", "url", "check_name", "task_id", "tenant_id")


class SensitiveDataFilter(logging.Filter):

    SENSITIVE_KEYS = [
        'password', 'token', 'api_key', 'secret', 'authorization',
        'credentials', 'bearer', 'x-api-key',
        'AUDIT_SUMMARY_API_KEY', 'POSTGRES_PASSWORD', 'RABBITMQ_PASSWORD',
    ]

    PATTERNS = [
        (re.compile(r'(api[_-]?key\s*[=:]\s*)[^\s&]+', re.I), r'\1***MASKED***'),
        (re.compile(r'(token\s*[=:]\s*)[^\s&]+', re.I), r'\1***MASKED***'),
        (re.compile(r'(password\s*[=:]\s*)[^\s&]+', re.I), r'\1***MASKED***'),
        (re.compile(r'(sk-[a-zA-Z0-9-]{20,})'), r'sk-***MASKED***'),
        (re.compile(r'(Bearer\s+)[^\s]+'), r'\1***MASKED***'),
        (re.compile(r'(://[^:/\s]+:)[^@/\s]+@'), r'\1***MASKED***@'),
    ]

    def filter(self, record):
        msg = str(record.msg)
        lowered = msg.lower()
        if any(key.lower() in lowered for key in self.SENSITIVE_KEYS) or "://" in msg:
            record.msg = self._mask_sensitive_data(msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(self._mask_if_sensitive(arg) for arg in record.args)

        return True

    def _mask_sensitive_data(self, text):
        for pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _mask_if_sensitive(self, value):
        if isinstance(value, str):
            return self._mask_sensitive_data(value)
        return value


class CustomJsonFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = self.formatTime(record, self.datefmt)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record['service' if field == 'service_name' else field] = getattr(record, field)

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)


def _formatter():
    if ENVIRONMENT == "production":
        return CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')
    return logging.Formatter(
        '[%(asctime)s] %(levelname)-8s [%(name)s.%(funcName)s:%(lineno)d] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _rotating_handler(path, level, formatter, sensitive_filter):
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=50 * 1024 * 1024,
        backupCount=10,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(sensitive_filter)
    return handler


def setup_logging(service_name="site_audit"):

    logger = logging.getLogger()
    logger.setLevel(LOG_LEVEL)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    sensitive_filter = SensitiveDataFilter()
    formatter = _formatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(LOG_LEVEL)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(sensitive_filter)
    logger.addHandler(console_handler)

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.addHandler(_rotating_handler(LOG_DIR / f"{service_name}.log", LOG_LEVEL, formatter, sensitive_filter))
    logger.addHandler(_rotating_handler(LOG_DIR / f"{service_name}_error.log", logging.ERROR, formatter, sensitive_filter))

    access_logger = logging.getLogger("uvicorn.access")
    access_logger.addHandler(
        _rotating_handler(LOG_DIR / f"{service_name}_access.log", logging.INFO, formatter, sensitive_filter)
    )

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    logging.getLogger("kombu").setLevel(logging.WARNING)
    logging.getLogger("amqp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return logger


def get_logger(name, service_name=None):
    logger = logging.getLogger(name)

    if service_name:
        logger = logging.LoggerAdapter(logger, {'service_name': service_name})

    return logger


def setup_celery_logging():
    from celery.signals import after_setup_logger, after_setup_task_logger

    @after_setup_logger.connect
    def setup_loggers(logger, *args, **kwargs):
        for handler in logger.handlers:
            handler.addFilter(SensitiveDataFilter())

    @after_setup_task_logger.connect
    def setup_task_loggers(logger, *args, **kwargs):
        for handler in logger.handlers:
            handler.addFilter(SensitiveDataFilter())


def log_task_execution(logger, task_name, task_id, duration, status, error=None):
    extra = {
        'task_name': task_name,
        'task_id': task_id,
        'duration_seconds': round(duration, 2),
        'status': status,
    }

    if error:
        logger.error(
            f"Task failed: {task_name} ({task_id})",
            extra={**extra, 'error': str(error)},
            exc_info=error
        )
    else:
        logger.info(
            f"Task completed: {task_name} ({task_id})",
            extra=extra
        )


class AuditLogger:
    """Named lifecycle events for site audits, one log line each."""

    def __init__(self):
        self.logger = get_logger('site_audit.events')

    def _extra(self, **fields):
        return {'service_name': 'site_audit', **fields}

    def log_batch_started(self, audit_id, batch, url):
        self.logger.info(
            f"Audit batch {batch} started: {url}",
            extra=self._extra(audit_id=audit_id, batch=batch, url=url)
        )

    def log_batch_completed(self, audit_id, batch, pages_count, duration, budget_exhausted):
        self.logger.info(
            f"Audit batch {batch} finished: {pages_count} pages in {duration:.2f}s",
            extra=self._extra(
                audit_id=audit_id,
                batch=batch,
                pages_count=pages_count,
                duration_seconds=round(duration, 2),
                budget_exhausted=budget_exhausted,
            )
        )

    def log_page_crawled(self, audit_id, url, status_code, load_time):
        self.logger.debug(
            f"Page crawled: {url} ({status_code})",
            extra=self._extra(
                audit_id=audit_id,
                url=url,
                status_code=status_code,
                load_time_ms=round(load_time * 1000, 2),
            )
        )

    def log_fetch_failed(self, audit_id, url, error):
        self.logger.warning(
            f"Fetch failed: {url}",
            extra=self._extra(audit_id=audit_id, url=url, error=error)
        )

    def log_audit_finished(self, audit_id, status, overall_score=None, error=None):
        level = logging.WARNING if error else logging.INFO
        self.logger.log(
            level,
            f"Audit finished: {status}",
            extra=self._extra(audit_id=audit_id, status=status, overall_score=overall_score, error=error)
        )


audit_logger = AuditLogger()
