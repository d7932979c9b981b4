"""
Booking Desk Tests

Unit tests run against an in-memory SchedulingStore and a recording
messaging gateway (see conftest.py); no database or Redis is needed.

Running Tests:
    pip install -e ".[test]"
    pytest tests/unit -v
"""
