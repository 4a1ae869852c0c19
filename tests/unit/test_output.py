"""Tests for timestamped console output."""

import re

import pytest

from cubuild import output

TIMESTAMP = r"\d{2}:\d{2}\.\d{2}"


def test_log_phase_has_timestamp(output_stream):
    output.log_phase(1, 6, "Collecting kernel sources...")
    assert re.fullmatch(rf"{TIMESTAMP} \[1/6\] Collecting kernel sources...\n", output_stream.getvalue())


def test_log_phase_format(output_stream):
    output.log_phase(2, 6, "Resolving target architectures...")
    assert "[2/6] Resolving target architectures..." in output_stream.getvalue()


def test_log_detail_indent(output_stream):
    output.log_detail("sm_86", indent=4)
    assert output_stream.getvalue().endswith("     sm_86\n")


def test_log_file_cached(output_stream):
    output.log_file("ptx", "softmax.cu", cached=True)
    assert "[ptx] softmax.cu (cached)" in output_stream.getvalue()


@pytest.mark.parametrize(
    "emit",
    [
        lambda: output.log_phase(1, 2, "x", verbose_only=True),
        lambda: output.log_detail("x", verbose_only=True),
        lambda: output.log_file("ptx", "x.cu"),
        lambda: output.log_build_complete(1.0, verbose_only=True),
    ],
)
def test_verbose_only_suppressed(output_stream, emit):
    output.set_verbose(False)
    emit()
    assert output_stream.getvalue() == ""


def test_warnings_always_printed(output_stream):
    output.set_verbose(False)
    output.log_warning("careful")
    assert "WARNING: careful" in output_stream.getvalue()


def test_build_complete_message(output_stream):
    output.log_build_complete(1.5)
    assert "Kernel build time: 1.50s" in output_stream.getvalue()


def test_format_timestamp_shape():
    assert re.fullmatch(TIMESTAMP, output.format_timestamp())
