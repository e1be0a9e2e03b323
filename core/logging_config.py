import logging.config
import structlog
from pythonjsonlogger import jsonlogger
import coloredlogs

from core.config import get_settings

FIELD_STYLES = {
    'asctime': {'color': 'green'},
    'levelname': {'bold': True, 'color': 'cyan'},
    'name': {'color': 'white'},
    'message': {'color': 'white'}
}

LEVEL_STYLES = {
    'DEBUG': {'color': 'blue'},
    'INFO': {'color': 'green'},
    'WARNING': {'color': 'yellow'},
    'ERROR': {'color': 'red'},
    'CRITICAL': {'bold': True, 'color': 'red'}
}


def build_logging_config(level: str = "INFO", fmt: str = "console") -> dict:
    """Return a dictConfig mapping for the given level and output format.

    ``fmt`` selects the root handler: ``console`` for colored human-readable
    lines, ``json`` for one JSON object per record.
    """
    handler = "json" if fmt == "json" else "console"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s"
            },
            "colored": {
                "()": coloredlogs.ColoredFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "field_styles": FIELD_STYLES,
                "level_styles": LEVEL_STYLES
            }
        },
        "handlers": {
            "json": {
                "class": "logging.StreamHandler",
                "formatter": "json"
            },
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "colored"
            }
        },
        "loggers": {
            "": {
                "handlers": [handler],
                "level": level.upper()
            },
            # SQL echo is controlled by DB_ECHO, keep the engine quiet otherwise
            "sqlalchemy.engine": {
                "level": "WARNING"
            }
        }
    }


def setup_logging():
    settings = get_settings()
    logging.config.dictConfig(
        build_logging_config(settings.LOG_LEVEL, settings.LOG_FORMAT)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
