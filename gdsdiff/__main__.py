#!/usr/bin/env python3
"""
gdsdiff - GEO differential expression pipeline

Entry point for running as a module: python -m gdsdiff
"""

from gdsdiff.cli import app

if __name__ == "__main__":
    # Run the CLI application
    app()
