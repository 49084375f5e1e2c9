#!/usr/bin/env python3
"""Main entry point for the prompt-chain engine CLI."""
import sys

from promptchain.cli import main

if __name__ == "__main__":
    sys.exit(main())
