"""
Exception Hierarchy

Custom exceptions for the dispatch migration engine.
"""


class MigrationEngineException(Exception):
    """Base exception for the dispatch migration engine"""

    # Error kind used by the error handler when this exception is classified
    kind = "unknown"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Checkpoint Exceptions
class CheckpointException(MigrationEngineException):
    """Exception during checkpoint management"""
    pass


class ConflictError(CheckpointException):
    """Raised when an in_progress checkpoint already exists for an entity"""
    pass


class CheckpointNotFoundException(CheckpointException):
    """Exception when a checkpoint id does not exist"""
    pass


class InvalidCheckpointTransition(CheckpointException):
    """Exception when a checkpoint status change is not allowed"""
    pass


# Mapping Exceptions
class MappingException(MigrationEngineException):
    """Exception during legacy id mapping"""
    pass


class UnknownEntityTypeException(MappingException):
    """Exception when an entity type was never registered"""
    pass


# Orchestration Exceptions
class OrchestrationException(MigrationEngineException):
    """Exception during run sequencing"""
    pass


class InvalidEntityConfiguration(OrchestrationException):
    """Exception when entity descriptors are inconsistent"""
    pass


# Row-level Exceptions
class RecordProcessingException(MigrationEngineException):
    """Exception when processing a single source row"""
    pass


class DataTypeException(RecordProcessingException):
    """Row value could not be cast or is malformed"""
    kind = "data_type"


# Performance Exceptions
class PerformanceException(MigrationEngineException):
    """Exception related to resource constraints"""
    pass


class MemoryLimitException(PerformanceException):
    """Exception when memory limit is exceeded"""
    kind = "memory"


# Configuration Exceptions
class ConfigurationException(MigrationEngineException):
    """Exception related to configuration"""
    pass


class InvalidConfigurationException(ConfigurationException):
    """Exception when configuration is invalid"""
    pass


# Utility functions
def format_exception_details(exception: MigrationEngineException) -> str:
    """
    Format exception details for logging

    Args:
        exception: Migration engine exception instance

    Returns:
        Formatted string with exception details
    """
    details_str = f"{exception.__class__.__name__}: {exception.message}"

    if exception.details:
        details_list = [f"  {k}: {v}" for k, v in exception.details.items()]
        details_str += "\nDetails:\n" + "\n".join(details_list)

    return details_str
