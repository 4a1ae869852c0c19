"""Pytest configuration and fixtures for cubuild tests.

cubuild.output writes timestamped lines to a module-level stream. Each test
gets a fresh in-memory stream so phase output never leaks into pytest's
captured stdout and tests can assert on what was printed.
"""

import io
import sys
import warnings

import pytest

from cubuild import output

# Suppress ResourceWarnings from file cleanup in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)


@pytest.fixture(autouse=True)
def output_stream():
    """Route cubuild console output to a StringIO for the duration of a test."""
    stream = io.StringIO()
    output.init_timer(stream)
    output.set_verbose(True)
    yield stream
    output.init_timer(sys.stdout)
    output.set_verbose(True)
