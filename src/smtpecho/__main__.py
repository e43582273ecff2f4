#!/usr/bin/env python3
"""
Allow running smtp-echo as a module: python -m smtpecho

This enables the following usage:
    python -m smtpecho --config config.toml

Which is equivalent to:
    smtp-echo --config config.toml
"""

from smtpecho.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
