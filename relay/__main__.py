#!/usr/bin/env python3
"""
Relay main entry point.

Allows the relay to be run as a module: python3 -m relay
"""

import sys

from relay.cli import main

if __name__ == "__main__":
    sys.exit(main())
