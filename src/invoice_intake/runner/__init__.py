"""
CLI runner module.

Provides commands:
- init / add-tenant / add-connection: setup
- process: run one .eml file through the pipeline
- poll: poll active connections once
- health-check: run one health sweep
- daemon: poll + sweep loop
- retry-dead-letter / ack-alert / status: operator actions
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
