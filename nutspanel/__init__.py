"""
Regional NUTS 2 panel construction for cohesion-fund event studies.
"""

__version__ = "0.1.0"
