"""
Test suite for the dental booking orchestrator.

    pytest tests/unit -v

Unit tests run without Redis, a booking API or an Anthropic key: booking
operations use the in-memory backend and Claude calls are scripted
(see tests/fakes.py).
"""
