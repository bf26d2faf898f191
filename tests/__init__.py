"""
clawbridge test suite.

Tests are organized by layer:
    tests/unit/         Unit tests (in-memory transport, no sockets)
    tests/integration/  Integration tests (real WebSocket on localhost)

Run all tests:
    pytest

Run unit tests only:
    pytest tests/unit/
"""
