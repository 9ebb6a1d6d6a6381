"""
Tests Package - Unit Tests

Test structure:
- tests/fakes.py - In-memory storage provider and queue backend
- tests/conftest.py - Shared pytest fixtures
- tests/test_*.py - One module per component
"""
