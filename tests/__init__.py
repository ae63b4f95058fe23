# tests/__init__.py
"""Test suite for the HDR to JPEG converter."""
