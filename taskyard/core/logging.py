# taskyard/core/logging.py
import logging
import sys
from datetime import datetime

# Level applied to loggers created after the call to set_default_level().
_default_level: int = logging.INFO


class ColoredFormatter(logging.Formatter):
    """Colored, column-aligned formatter for taskyard components."""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    # [settlement] is the widest component tag
    COMPONENT_WIDTH = 14
    LEVEL_WIDTH = 10

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'taskyard.worker' -> 'worker'
        component = record.name.rsplit('.', 1)[-1]
        component_padded = f'[{component}]'.ljust(self.COMPONENT_WIDTH)
        level_padded = f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH)

        reset = self.COLORS['RESET']
        white = self.COLORS['WHITE']
        level_color = self.LEVEL_COLORS.get(record.levelname, white)

        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{reset} "
            f'{white}{component_padded}{reset}'
            f'{level_color}{level_padded}{reset}'
            f'{white}{record.getMessage()}{reset}'
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'taskyard.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
