"""
Exceptions module for VD Curation.
Defines custom exception classes for the curation and release pipeline.
"""

import time
import functools
import logging

log = logging.getLogger("vd-curation")


class CurationError(Exception):
    """Base exception class for all VD Curation errors."""

    def __init__(self, message="An error occurred in VD Curation", details=None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(CurationError):
    """Exception raised for errors related to configuration."""

    def __init__(self, message="Error with configuration", details=None):
        super().__init__(message, details)


class SchemaError(ConfigurationError):
    """Exception raised when a database table does not match the schema descriptor."""

    def __init__(self, message="Database schema does not match descriptor", details=None):
        super().__init__(message, details)


class InvalidFormatError(CurationError):
    """Exception raised for malformed genomic position strings."""

    def __init__(self, message="Invalid genomic position format", details=None):
        super().__init__(message, details)


class AnnotationError(CurationError):
    """
    Exception raised for errors during variant annotation.

    Every subclass carries a ``tag`` so callers can branch on the kind of
    failure rather than on a message or numeric code.
    """

    tag = "ANNOTATION_ERROR"

    def __init__(self, message="Error during variant annotation", details=None):
        super().__init__(message, details)


class ToolNotConfiguredError(AnnotationError):
    """The annotation tool path is missing or unreachable."""

    tag = "TOOL_NOT_CONFIGURED"

    def __init__(self, message="Annotation tool has not been properly configured", details=None):
        super().__init__(message, details)


class UnsupportedMutationTypeError(AnnotationError):
    """The annotation tool does not support this kind of mutation."""

    tag = "UNSUPPORTED_MUTATION_TYPE"

    def __init__(self, message="Unsupported mutation type", details=None):
        super().__init__(message, details)


class NoMatchingReferenceError(AnnotationError):
    """The annotation tool found no matching reference sequence."""

    tag = "NO_MATCHING_REFERENCE"

    def __init__(self, message="No matching reference sequence", details=None):
        super().__init__(message, details)


class NoDataFoundError(AnnotationError):
    """The annotation tool produced no data for the variant."""

    tag = "NO_DATA_FOUND"

    def __init__(self, message="No annotation data found for this variant", details=None):
        super().__init__(message, details)


class DuplicateVariantError(CurationError):
    """Exception raised when a variation already exists in the live or queue table."""

    def __init__(self, message="Variant already exists in the database", details=None):
        super().__init__(message, details)


class VariantNotFoundError(CurationError):
    """Exception raised when a variant id is in neither the queue nor the live table."""

    def __init__(self, message="Variant not found", details=None):
        super().__init__(message, details)


class NothingToReleaseError(CurationError):
    """Exception raised when a release outside the bootstrap version has no changes."""

    def __init__(self, message="There are no changes to release", details=None):
        super().__init__(message, details)


class ReleaseError(CurationError):
    """Exception raised when a release fails and is rolled back."""

    def __init__(self, message="Release failed and was rolled back", details=None):
        super().__init__(message, details)


class APIError(CurationError):
    """Exception raised for errors related to external HTTP lookups."""

    def __init__(self, message="Error with API operations", details=None):
        super().__init__(message, details)


class PipelineError(CurationError):
    """Exception raised when a bulk annotation pipeline stage fails."""

    def __init__(self, message="Error in bulk annotation pipeline", details=None):
        super().__init__(message, details)


# Utility function for retrying operations
def retry_operation(max_attempts=3, retry_delay=1, retry_exceptions=(APIError, ConnectionError)):
    """
    Decorator for retrying operations that might fail transiently.

    Args:
        max_attempts: Maximum number of attempts
        retry_delay: Delay between attempts in seconds
        retry_exceptions: Tuple of exceptions to catch and retry

    Returns:
        Decorator function
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempts = 0
            while attempts < max_attempts:
                try:
                    return func(*args, **kwargs)
                except retry_exceptions as e:
                    attempts += 1
                    if attempts == max_attempts:
                        log.error(f"Operation failed after {max_attempts} attempts: {e}")
                        raise
                    log.warning(f"Operation failed, retrying ({attempts}/{max_attempts}): {e}")
                    time.sleep(retry_delay)
        return wrapper
    return decorator
