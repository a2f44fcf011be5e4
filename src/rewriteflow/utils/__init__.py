"""
rewriteflow utilities.

- configure_logging: rich console or JSON-lines logging setup
"""

from rewriteflow.utils.logging import ROOT_LOGGER, JsonLinesFormatter, configure_logging

__all__ = [
    "ROOT_LOGGER",
    "JsonLinesFormatter",
    "configure_logging",
]
