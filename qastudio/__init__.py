"""QA Studio: secret protection and rate limiting for the test-management app."""

__version__ = "0.1.0"

from .config import ConfigurationError, Settings, get_settings, validate_environment

__all__ = ["Settings", "ConfigurationError", "get_settings", "validate_environment"]
