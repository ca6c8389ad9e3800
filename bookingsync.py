#!/usr/bin/env python3
"""
Convenience entry point for running bookingsync directly.

Usage: python bookingsync.py [command] [options]
"""

from bookingsync.cli.app import app

if __name__ == "__main__":
    app()
