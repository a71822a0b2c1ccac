"""
Entry point for running the batch upsert engine as a module.

Usage:
    python -m services.batch_upsert upsert --table users --payload '{"name": "x"}'
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
