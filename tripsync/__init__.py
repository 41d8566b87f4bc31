"""
tripsync - offline-resilient synchronization core for a trip-planning client.
"""

__version__ = "0.1.0"
