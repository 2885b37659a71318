"""
covergate - Statement coverage gate for Python packages.

Runs package tests under coverage.py, exempts error-handling code that only
propagates the error (and code marked ``# notest``), writes a block-level
coverage profile and fails unless every remaining statement ran.

Usage:
    covergate run ./...          # Test, report and write coverage.out
    covergate run -e ./...       # Fail on any untested statement
    covergate scan ./...         # Show exempt ranges
    covergate merge a.out b.out  # Merge profiles
"""

__version__ = "0.1.0"
