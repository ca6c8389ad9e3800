"""
bookingsync - booking availability and external calendar synchronization.
"""

__version__ = "0.3.0"
