"""
Test error mapping and CLI exit code functionality.

Validates that exceptions are correctly mapped to exit codes and that
the run_and_exit wrapper handles errors appropriately for CLI commands.
"""
from __future__ import annotations

import pytest
import typer

from image_mounter.errors import (
    AllMirrorsExhausted,
    DigestLookupFailure,
    ResolutionFailure,
    StreamFailure,
)
from image_mounter.operations.mappers import EXIT_CODES, exit_code_for, run_and_exit


class TestExitCodeMapping:
    """Test exception to exit code mapping."""

    def test_known_exceptions_mapped_correctly(self):
        assert exit_code_for(ValueError("bad name")) == 2
        assert exit_code_for(AllMirrorsExhausted("app:v1", [])) == 4
        assert exit_code_for(ResolutionFailure("bad registries.conf")) == 5

    def test_unknown_exception_maps_to_fallback(self):
        assert exit_code_for(RuntimeError("boom")) == 3
        assert exit_code_for(DigestLookupFailure("no digest")) == 3

    def test_exit_codes_are_distinct(self):
        assert len(set(EXIT_CODES.values())) == len(EXIT_CODES)
        assert 0 not in EXIT_CODES.values()
        assert 3 not in EXIT_CODES.values()


class TestRunAndExit:
    """Test the run_and_exit wrapper."""

    def test_returns_result_on_success(self):
        assert run_and_exit(lambda: 42) == 42

    def test_maps_exception_to_exit(self, capsys):
        def fail():
            raise ResolutionFailure("could not resolve all mirrored names for 'app:v1'")

        with pytest.raises(typer.Exit) as exc_info:
            run_and_exit(fail)

        assert exc_info.value.exit_code == 5
        assert "could not resolve" in capsys.readouterr().err

    def test_mirror_failures_are_listed(self, capsys):
        failures = [
            ("mirror.example.com/app:v1", StreamFailure("disk full", [OSError("disk full")])),
            ("quay.io/app:v1", DigestLookupFailure("connection refused")),
        ]

        def fail():
            raise AllMirrorsExhausted("quay.io/app:v1", failures)

        with pytest.raises(typer.Exit) as exc_info:
            run_and_exit(fail)

        assert exc_info.value.exit_code == 4
        err = capsys.readouterr().err
        assert "mirror.example.com/app:v1" in err
        assert "DigestLookupFailure" in err


class TestErrorMessages:

    def test_all_mirrors_exhausted_message(self):
        error = AllMirrorsExhausted("app:v1", [("a/app:v1", RuntimeError("x")), ("b/app:v1", RuntimeError("y"))])
        assert str(error) == "all mirrors tried for 'app:v1': a/app:v1: x; b/app:v1: y"

    def test_stream_failure_keeps_every_error(self):
        errors = [RuntimeError("export"), OSError("extract")]
        assert StreamFailure("failed", errors).errors == errors
