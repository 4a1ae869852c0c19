"""
Integration tests for cubuild.

These tests drive a real CUDA toolkit end to end: kernel compilation with
nvcc, static library archiving and PTX generation.
"""
