"""
EventFlow - reliable event ingestion and delivery pipeline
"""

__version__ = "1.0.0"
