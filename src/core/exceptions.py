"""
Structured Exception Hierarchy for the Site Simulator

This module provides the exception hierarchy used across sitesim, with
user-friendly error messages and suggestions for error resolution.

Key Features:
- Structured exceptions for configuration, topology and process errors
- User-friendly error messages without technical details
- Suggested actions for error resolution
- Debug information available only in verbose mode
- Consistent error reporting for the command line front end

Note that the process lifecycle API (start/stop/restart/wait_ready) reports
OS-level failures as boolean results. Exceptions are reserved for errors the
caller cannot treat as an expected failure-injection outcome.
"""

import functools
import sys
import traceback
from typing import Optional, Dict, Any, List
from enum import IntEnum


class ErrorCode(IntEnum):
    """Standard exit codes for the application."""
    SUCCESS = 0
    NOT_READY = 1
    NOT_FOUND = 2
    INVALID_INPUT = 10
    CONFIGURATION_ERROR = 11
    NETWORK_ERROR = 12
    PERMISSION_ERROR = 13
    RESOURCE_ERROR = 14
    INTERNAL_ERROR = 15


class SiteSimError(Exception):
    """
    Base exception class for all site simulator errors.

    Carries a message meant for the person running the tests, an optional
    suggestion, the exit code the command line front end returns, and
    details that are only shown at higher verbosity.
    """

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        """
        Args:
            message: User-friendly error message
            suggestion: Suggested action to resolve the error
            error_code: Exit code for the error
            details: Additional error details (shown only in verbose mode)
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.error_code = error_code
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def format_error(self, verbose_level: int = 0) -> str:
        """
        Render the error for the terminal.

        -v adds the details, -vv the underlying cause, -vvv the traceback.
        """
        parts = [f"Error: {self.message}"]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")

        if verbose_level >= 1 and self.details:
            parts.append("\nDetails:\n" + "\n".join(
                f"  {key}: {value}" for key, value in self.details.items()))

        if verbose_level >= 2 and self.cause is not None:
            parts.append(f"\nCaused by: {type(self.cause).__name__}: {self.cause}")

        if verbose_level >= 3:
            tb = self.__traceback__ or sys.exc_info()[2]
            trace = "".join(traceback.format_tb(tb)) if tb else "(not raised yet)\n"
            parts.append("\nStack trace:\n" + trace.rstrip("\n"))

        return "\n".join(parts)


# Configuration Errors

class ConfigurationError(SiteSimError):
    """Raised when there are configuration-related issues."""

    def __init__(self, message: str, config_file: Optional[str] = None, **kwargs):
        suggestion = "Check your configuration file format and values."
        if config_file:
            suggestion += f" Configuration file: {config_file}"
            kwargs['details'] = kwargs.get('details', {})
            kwargs['details']['config_file'] = config_file
        super().__init__(
            message=message,
            suggestion=suggestion,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            **kwargs
        )


class ConfigWriteError(ConfigurationError):
    """Raised when a generated config file or directory cannot be written."""

    def __init__(self, path: str, reason: str, **kwargs):
        details = kwargs.get('details', {})
        details.update({"path": path, "reason": reason})
        kwargs['details'] = details
        super().__init__(
            message=f"Failed to write {path}: {reason}",
            **kwargs
        )
        self.error_code = ErrorCode.RESOURCE_ERROR
        self.suggestion = (
            "Generated configuration could not be written. Check:\n"
            "  1. The working directory is writable\n"
            "  2. The filesystem is not full\n"
            "  3. No stale files are owned by another user"
        )


# Topology Errors

class TopologyError(SiteSimError):
    """Raised when the deployment topology is inconsistent."""

    def __init__(self, message: str, site: Optional[str] = None,
                 available_sites: Optional[List[str]] = None, **kwargs):
        details = kwargs.get('details', {})
        if site is not None:
            details['site'] = site
        if available_sites is not None:
            details['available_sites'] = sorted(available_sites)
        kwargs['details'] = details
        kwargs.pop('error_code', None)

        sites_hint = ""
        if available_sites:
            sites_hint = f"\nKnown sites: {', '.join(sorted(available_sites))}"

        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            **kwargs
        )
        self.suggestion = (
            "Every site must be added to the deployment topology before any "
            f"Site is constructed from it.{sites_hint}"
        )


# Process Errors

class ProcessError(SiteSimError):
    """Base class for managed process errors."""

    def __init__(self, message: str, **kwargs):
        if 'error_code' not in kwargs:
            kwargs['error_code'] = ErrorCode.INTERNAL_ERROR
        super().__init__(
            message=message,
            **kwargs
        )


class ProcessStateError(ProcessError):
    """Raised when a process attribute is read outside its valid window."""

    def __init__(self, name: str, state: str, operation: str, **kwargs):
        super().__init__(
            message=f"Cannot {operation} for {name}: process is {state}",
            suggestion="Call start() and check its result before using the process id.",
            details={"instance": name, "state": state},
            **kwargs
        )


class ReadinessTimeoutError(ProcessError):
    """Raised when instances never became reachable."""

    def __init__(self, instances: List[str], **kwargs):
        super().__init__(
            message=f"{len(instances)} instance(s) did not come up: {', '.join(instances)}",
            suggestion=(
                "The processes were started but nothing is listening. Check:\n"
                "  1. The binary paths in the 'binaries' configuration section\n"
                "  2. The per-instance log directories for startup errors\n"
                "  3. Whether the loopback addresses are bindable on this host\n"
                "  4. Raise readiness.attempts on a heavily loaded machine"
            ),
            error_code=ErrorCode.NOT_READY,
            details={"instances": instances},
            **kwargs
        )


# Validation Errors

class ValidationError(SiteSimError):
    """Base class for input validation errors."""

    def __init__(self, field: str, value: Any, requirement: str, **kwargs):
        super().__init__(
            message=f"Invalid {field}: {value}",
            suggestion=f"The {field} must {requirement}",
            error_code=ErrorCode.INVALID_INPUT,
            details={"field": field, "value": value, "requirement": requirement},
            **kwargs
        )


class PortValidationError(ValidationError):
    """Raised when port number is invalid."""

    def __init__(self, port: Any, **kwargs):
        super().__init__(
            field="port",
            value=port,
            requirement="be a number between 1 and 65535",
            **kwargs
        )


class AddressValidationError(ValidationError):
    """Raised when a site index or address prefix is invalid."""

    def __init__(self, value: Any, requirement: str, **kwargs):
        super().__init__(
            field="address block",
            value=value,
            requirement=requirement,
            **kwargs
        )


# Error Handler Utility

def verbosity_from_argv(argv: Optional[List[str]]) -> int:
    """Count -v flags (-v, -vv, --verbose) in a command line."""
    level = 0
    for arg in argv if argv is not None else sys.argv[1:]:
        if arg == '--verbose':
            level += 1
        elif len(arg) > 1 and arg[0] == '-' and arg[1] != '-' and set(arg[1:]) == {'v'}:
            level += len(arg) - 1
    return level


class ErrorHandler:
    """Turns exceptions escaping a command into a message and an exit code."""

    @staticmethod
    def handle_error(error: Exception, verbose_level: int = 0) -> int:
        """
        Report ``error`` on stderr.

        Returns:
            Exit code for the application
        """
        if isinstance(error, SiteSimError):
            print(error.format_error(verbose_level), file=sys.stderr)
            return error.error_code

        print("Error: An unexpected error occurred", file=sys.stderr)
        print("Suggestion: This might be a bug. Please report it with the output of -vvv.",
              file=sys.stderr)
        if verbose_level >= 1:
            print(f"\nError type: {type(error).__name__}", file=sys.stderr)
            print(f"Error message: {error}", file=sys.stderr)
        if verbose_level >= 3:
            print("\nStack trace:", file=sys.stderr)
            traceback.print_exception(type(error), error, error.__traceback__, file=sys.stderr)
        return ErrorCode.INTERNAL_ERROR

    @staticmethod
    def wrap_main(main_func):
        """
        Decorator for command entry points taking an optional argv list.

        Usage:
            @ErrorHandler.wrap_main
            def main(argv=None):
                ...
        """
        @functools.wraps(main_func)
        def wrapper(argv: Optional[List[str]] = None):
            try:
                return main_func(argv)
            except KeyboardInterrupt:
                print("\nOperation cancelled by user", file=sys.stderr)
                return ErrorCode.INTERNAL_ERROR
            except Exception as e:
                return ErrorHandler.handle_error(e, verbosity_from_argv(argv))

        return wrapper
