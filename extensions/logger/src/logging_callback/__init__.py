"""
Logging
"""

from logging_callback.logging_callback import TapegradLogger, default_logger

__all__ = ["TapegradLogger"]


import tapegrad

tapegrad.Configuration(logger := TapegradLogger())
default_logger.info("%s set as logger for tapegrad", str(logger))
