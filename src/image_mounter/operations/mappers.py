"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and CLI command wrappers
to ensure consistent error handling across all Typer commands.
"""
from __future__ import annotations

import logging

import typer
from typing import Callable, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)

EXIT_CODES = {
    "ValueError": 2,
    "AllMirrorsExhausted": 4,
    "ResolutionFailure": 5,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Returns exit codes:
    - 0: Success
    - 2: Invalid input (ValueError)
    - 3: Any other failure (fallback)
    - 4: Every mirror failed (AllMirrorsExhausted)
    - 5: Mirror list could not be resolved (ResolutionFailure)

    Args:
        exc: Exception to map

    Returns:
        Exit code (3 as fallback for unknown exceptions)
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. This centralizes error handling so
    CLI commands don't need individual try/except blocks.

    Args:
        func: Function to execute

    Returns:
        Function result if successful

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except Exception as e:
        from .printers import print_error, print_mirror_failures
        print_error(e)
        if type(e).__name__ == "AllMirrorsExhausted" and hasattr(e, "failures"):
            print_mirror_failures(e.failures)
        logger.debug("Command failed", exc_info=True)
        raise typer.Exit(code=exit_code_for(e)) from e
