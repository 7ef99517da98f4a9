"""
Utils Package

Contains the error taxonomy and logging setup.
"""

from .error_handler import ErrorInfo, ErrorKind, ErrorSeverity
from .logger import setup_logger

__all__ = [
    'ErrorInfo',
    'ErrorKind',
    'ErrorSeverity',
    'setup_logger',
]
