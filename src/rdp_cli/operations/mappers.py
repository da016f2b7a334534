"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import logging
from typing import Callable, TypeVar

import typer

T = TypeVar('T')

logger = logging.getLogger(__name__)

# Keyed by class name so subclasses resolve through their MRO
EXIT_CODES = {
    "ResourceNotFoundError": 1,
    "ValidationError": 2,
    "ValueError": 2,
    "UnauthorizedError": 4,
    "AlreadyExistsError": 5,
    "PackageExistsError": 5,
    "TransferCancelled": 130,
}

DEFAULT_EXIT_CODE = 3


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns:
    - 1: Resource not found (ResourceNotFoundError)
    - 2: Invalid input (ValueError, pydantic ValidationError)
    - 3: Network, protocol or transfer error, or anything unknown
    - 4: Missing or expired access token (UnauthorizedError)
    - 5: Target already exists (AlreadyExistsError, PackageExistsError)
    - 130: Interrupted (TransferCancelled, KeyboardInterrupt)

    Args:
        exc: Exception to map

    Returns:
        Exit code, with 3 as fallback for unknown exceptions
    """
    if isinstance(exc, KeyboardInterrupt):
        return 130
    for cls in type(exc).__mro__:
        if cls.__name__ in EXIT_CODES:
            return EXIT_CODES[cls.__name__]
    return DEFAULT_EXIT_CODE


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. The error message goes to stderr; the
    traceback only to the debug log.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    from .printers import print_error

    try:
        return func()
    except typer.Exit:
        raise
    except KeyboardInterrupt as e:
        print_error("interrupted")
        raise typer.Exit(code=exit_code_for(e)) from e
    except Exception as e:
        logger.debug("command failed", exc_info=True)
        print_error(str(e) or type(e).__name__)
        raise typer.Exit(code=exit_code_for(e)) from e
