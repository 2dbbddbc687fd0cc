import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
playlist_id_var: ContextVar[Optional[str]] = ContextVar('playlist_id', default=None)
draft_id_var: ContextVar[Optional[str]] = ContextVar('draft_id', default=None)
trigger_var: ContextVar[Optional[str]] = ContextVar('trigger', default=None)
stage_var: ContextVar[Optional[str]] = ContextVar('stage', default=None)

_CORRELATION_VARS = {
    'playlist_id': (playlist_id_var, 'playlistId'),
    'draft_id': (draft_id_var, 'draftId'),
    'trigger': (trigger_var, 'trigger'),
    'stage': (stage_var, 'stage'),
}


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Platform access tokens
            r'(?i)(access_token|refresh_token|music_user_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Authorization headers
            r'(?i)(authorization|bearer)[\s]*[:=]?[\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # OpenAI style keys
            r'(?i)(api_key|openai_api_key)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
        ]
        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]
        self.sensitive_keys = {'token', 'secret', 'password', 'authorization', 'api_key', 'key'}

    def mask_value(self, secret: str) -> str:
        # Keep first 4 and last 4 characters, mask the rest
        if len(secret) > 8:
            return secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
        return '*' * len(secret)

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text
        for pattern in self.compiled_patterns:
            def replace_match(match):
                return f"{match.group(1)}: {self.mask_value(match.group(2))}"

            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def _is_sensitive_key(self, key: str) -> bool:
        lowered = key.lower()
        return any(marker in lowered for marker in self.sensitive_keys)

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary."""
        if not data:
            return data

        masked_data = {}
        for key, value in data.items():
            if isinstance(value, str) and self._is_sensitive_key(str(key)):
                masked_data[key] = self.mask_value(value)
            elif isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        """Initialize formatter."""
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        # Add correlation fields if available
        for var, json_key in _CORRELATION_VARS.values():
            value = var.get()
            if value:
                log_entry[json_key] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'fields') and record.fields:
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)

    def mask_secrets(self, text: str) -> str:
        """Mask secrets in text."""
        return self.masker.mask_secrets(text)


class MaskingTextFormatter(logging.Formatter):
    """Plain text formatter that still masks secrets."""

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        return self.masker.mask_secrets(super().format(record))


class CorrelationContext:
    """Context manager for correlation data.

    Only the values passed in are set; on exit each one is restored to what it
    was before entering, so contexts nest.
    """

    def __init__(self, playlist_id: Optional[str] = None,
                 draft_id: Optional[str] = None,
                 trigger: Optional[str] = None,
                 stage: Optional[str] = None):
        """Initialize correlation context."""
        self._values = {
            'playlist_id': playlist_id,
            'draft_id': draft_id,
            'trigger': trigger,
            'stage': stage,
        }
        self._tokens = {}

    def __enter__(self):
        """Set correlation context."""
        for name, value in self._values.items():
            if value is not None:
                var = _CORRELATION_VARS[name][0]
                self._tokens[name] = var.set(value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for name, token in self._tokens.items():
            _CORRELATION_VARS[name][0].reset(token)
        self._tokens = {}


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  log_format: str = 'json') -> logging.Logger:
    """Setup structured logging on the ``mixwell`` root logger."""
    logger = logging.getLogger('mixwell')
    logger.setLevel(getattr(logging, level.upper()))

    # Clear existing handlers
    logger.handlers.clear()

    formatter = StructuredFormatter() if log_format == 'json' else MaskingTextFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = 'mixwell') -> logging.Logger:
    """Get logger with structured formatting."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None, **kwargs):
    """Log message with additional fields."""
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno,
        '', 0, message, (), None
    )

    record.fields = dict(fields or {})
    if kwargs:
        record.fields.update(kwargs)

    logger.handle(record)


# Convenience functions for common logging patterns
def log_refresh_start(logger: logging.Logger, playlist_id: str, trigger: str, **kwargs):
    """Log refresh start."""
    with CorrelationContext(playlist_id=playlist_id, trigger=trigger, stage='start'):
        log_with_fields(logger, 'INFO', 'Refresh started', kwargs)


def log_refresh_complete(logger: logging.Logger, playlist_id: str, trigger: str,
                         added: int, removed: int, **kwargs):
    """Log refresh completion."""
    with CorrelationContext(playlist_id=playlist_id, trigger=trigger, stage='complete'):
        log_with_fields(logger, 'INFO', 'Refresh completed', {
            'added': added,
            'removed': removed,
            **kwargs
        })


def log_sweep_complete(logger: logging.Logger, due: int, dispatched: int, skipped: int, **kwargs):
    """Log scheduler sweep summary."""
    with CorrelationContext(trigger='auto', stage='sweep'):
        log_with_fields(logger, 'INFO', 'Scheduler sweep completed', {
            'due': due,
            'dispatched': dispatched,
            'skipped': skipped,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    })
