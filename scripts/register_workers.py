#!/usr/bin/env python3
"""Entry point for the Citus worker registrar.

Usage:
    python scripts/register_workers.py                     # settings from env
    python scripts/register_workers.py --config reg.yaml   # YAML + env overrides
    python scripts/register_workers.py --json              # JSON summary on stdout

Required environment:
    COORDINATOR_HOST, POSTGRES_USER, POSTGRES_PASSWORD
"""

import os
import sys

# Ensure project root is on path so `from citus_registrar.…` works
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from citus_registrar.cli.app import main


if __name__ == "__main__":
    sys.exit(main())
