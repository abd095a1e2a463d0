#!/usr/bin/env python3
"""
COVID Spatial Correlation - Exception Handling Utilities
========================================================

Exception types for the correlation pipeline and safe file helpers.

Recoverable errors (DataGapError, DegenerateBinError, RootNotFoundError) are
raised close to where the problem is detected and caught one level up, where
the affected county, bin or week is marked undefined. ConfigurationError is
fatal and aborts a run before any computation starts.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional, Union

from covid_spatial.utils.logger import CSLogger

logger = CSLogger().logger


class CSError(Exception):
    """Base exception for all analysis errors"""
    pass


class CSDataError(CSError):
    """Errors related to data loading, validation, or processing"""
    pass


class CSFileError(CSError):
    """File I/O related errors"""
    pass


class ConfigurationError(CSError):
    """Malformed bin boundaries, thresholds or other run parameters"""
    pass


class DataGapError(CSError):
    """A county lacks population or coordinate data, or a signal value is missing."""

    def __init__(self, identity: str, reason: str):
        super().__init__(f"{identity}: {reason}")
        self.identity = identity
        self.reason = reason

    def __reduce__(self):
        return (self.__class__, (self.identity, self.reason))


class DegenerateBinError(CSError):
    """Fewer than two pairs, or zero variance, in one distance bin"""

    def __init__(self, bin_index: int, reason: str):
        super().__init__(f"bin {bin_index}: {reason}")
        self.bin_index = bin_index
        self.reason = reason

    def __reduce__(self):
        return (self.__class__, (self.bin_index, self.reason))


class RootNotFoundError(CSError):
    """No zero crossing / significance transition, or solver tolerance not met"""
    pass


class SafeErrorHandler:
    """Wraps numerical operations so that expected failures are logged, not raised."""

    @staticmethod
    def safe_analysis_operation(
        operation: Callable,
        error_message: str = "Analysis operation failed",
        logger_func: Optional[Callable] = None,
        return_on_error: Any = None
    ):
        """
        Safely execute statistical analysis operations.

        Args:
            operation: Function to execute
            error_message: Message to log on error
            logger_func: Optional logging function
            return_on_error: Value to return on error

        Returns:
            Result of operation or return_on_error value
        """
        if logger_func is None:
            logger_func = logger.warning

        try:
            return operation()
        except CSError as e:
            logger_func(f"{error_message}: {e}")
            return return_on_error
        except (RuntimeError, ArithmeticError, FloatingPointError) as e:
            logger_func(f"{error_message} - computation error: {e}")
            return return_on_error
        except (ValueError, TypeError) as e:
            logger_func(f"{error_message} - parameter error: {e}")
            return return_on_error


def validate_file_exists(file_path: Union[str, Path], description: str = "File") -> Path:
    """
    Validate that a file exists and is readable.

    Raises:
        CSFileError: If file doesn't exist or is not accessible
    """
    path = Path(file_path)

    if not path.exists():
        raise CSFileError(f"{description} not found: {path}")

    if not path.is_file():
        raise CSFileError(f"{description} is not a file: {path}")

    if not os.access(path, os.R_OK):
        raise CSFileError(f"{description} is not readable: {path}")

    return path


def safe_csv_read(file_path: Union[str, Path], **kwargs):
    """
    Read a CSV file, translating pandas errors into CSDataError.

    Raises:
        CSDataError: For data-related errors
        CSFileError: For file-related errors
    """
    import pandas as pd

    path = validate_file_exists(file_path, "CSV file")

    try:
        return pd.read_csv(path, **kwargs)
    except pd.errors.EmptyDataError:
        raise CSDataError(f"CSV file is empty: {path}")
    except pd.errors.ParserError as e:
        raise CSDataError(f"Failed to parse CSV file {path}: {e}")
    except (UnicodeDecodeError, UnicodeError) as e:
        raise CSDataError(f"Encoding error reading CSV file {path}: {e}")


def safe_excel_read(file_path: Union[str, Path], **kwargs):
    """Read an Excel workbook sheet, translating reader errors into CSDataError."""
    import pandas as pd

    path = validate_file_exists(file_path, "Excel file")

    try:
        return pd.read_excel(path, **kwargs)
    except ValueError as e:
        raise CSDataError(f"Failed to parse Excel file {path}: {e}")


def safe_json_write(data: dict, file_path: Union[str, Path], indent: int = 2):
    """
    Write JSON atomically (temp file then rename).

    Raises:
        CSFileError: For file-related errors
        CSDataError: If data cannot be serialized
    """
    path = Path(file_path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix('.tmp')
        with open(temp_path, 'w') as f:
            json.dump(data, f, indent=indent, default=str)
        temp_path.replace(path)

    except OSError as e:
        raise CSFileError(f"Failed to write JSON file {path}: {e}")
    except (TypeError, ValueError) as e:
        raise CSDataError(f"Cannot serialize data to JSON: {e}")


def safe_json_read(file_path: Union[str, Path]):
    """
    Read a JSON file.

    Raises:
        CSDataError: For data-related errors
        CSFileError: For file-related errors
    """
    path = validate_file_exists(file_path, "JSON file")

    try:
        with open(path, 'r') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise CSDataError(f"Invalid JSON in file {path}: {e}")
