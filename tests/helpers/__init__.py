"""Test helper utilities for RideMatch tests."""

from .factories import T14, make_request

__all__ = ["T14", "make_request"]
