#!/usr/bin/env python3
"""
Command-line interface entry point for the hardsnap package.

This module allows the package to be executed as a script using:
python -m hardsnap
"""

import sys
from .cli import EXIT_ERROR, main


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        # Partial clones and temporary records are removed by the engines on the way out
        print("\nInterrupted, stopping without further changes", file=sys.stderr)
        sys.exit(EXIT_ERROR)
    except Exception as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(EXIT_ERROR)
