"""
Cross-network collectible purchase settlement service.
"""

__version__ = "0.1.0"
