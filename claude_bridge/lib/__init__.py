"""
Shared utilities for Claude Bridge.
"""
