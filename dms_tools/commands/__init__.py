"""CLI command implementations for dms_tools.

This module contains all command-line interface implementations:
- bundle: Check, sync, inspect and clear the installed bundle
- content: Look up nodes and resolve bundle paths
- document: Download and locate cached documents
"""

from dms_tools.commands.bundle import bundle
from dms_tools.commands.content import content, document

__all__ = ["bundle", "content", "document"]
