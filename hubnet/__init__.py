"""
hubnet - Hub/spoke WireGuard topology manager
"""

__version__ = "1.0.0"
