#!/usr/bin/env python3
"""
certsnek: Let's Encrypt certificate issuance and renewal over http-01.

This is the main entry point for the command line interface.
"""

from certsnek.cli import main

if __name__ == "__main__":
    main()
