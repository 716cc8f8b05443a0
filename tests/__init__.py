"""Test suite for deployctl."""
