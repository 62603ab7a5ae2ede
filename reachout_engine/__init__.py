"""
ReachOut Engine - workflow execution engine for multi-step outreach.
"""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("reachout-engine")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.0.0+unknown"

__author__ = "ReachOut Team"
