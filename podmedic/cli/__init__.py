"""podmedic command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``podmedic`` script).
"""

from podmedic.cli.main import cli

__all__ = ["cli"]
