"""
Test suite for the product photo pairing service.

Run all tests: pytest
Run unit tests only: pytest tests/unit/
Run specific file: pytest tests/unit/test_pairing_service.py -v
"""
