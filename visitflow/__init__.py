"""
Visit Flow

A FastAPI-based scheduling core for hospital visits: conflict-free
appointment booking against doctor capacity and the same-day walk-up
patient queue, with wait-time estimates.
"""

__version__ = "1.0.0"
