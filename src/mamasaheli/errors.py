import logging
from typing import List, Optional, Union

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when required configuration is missing or looks like a placeholder"""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


class StoreError(Exception):
    """Error raised by the document store, file storage and account backend"""

    def __init__(self, message: str, code: Union[int, str] = 500, type: str = "general_unknown"):
        super().__init__(message)
        self.message = message
        self.code = code
        self.type = type

    def __str__(self):
        return self.message


class OperationFailed(Exception):
    """Generic user-facing failure that hides backend specifics"""


def handle_store_error(error: BaseException, context: str, throw_generic: bool = False) -> BaseException:
    """
    Log an error with the name of the operation it interrupted.

    Returns the error so callers can re-raise it, or raises a generic
    OperationFailed when ``throw_generic`` is set.
    """
    if isinstance(error, StoreError):
        message = f"Error {context}: {error.message} (Code: {error.code}, Type: {error.type})"
    else:
        message = f"Error {context}: {error}"
    logger.error(message)

    if throw_generic:
        raise OperationFailed(f"Operation failed: {context}. Please check logs or try again.") from error
    return error
