"""
Test suite for the Visit Flow scheduling service.

Contains unit tests for the scheduling services and HTTP-level tests for the API.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
