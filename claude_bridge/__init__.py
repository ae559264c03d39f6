"""
Claude Bridge - chat front-end for per-user sandboxed Claude agents.
"""

__version__ = "0.1.0"
