"""
TokenWatch - token risk and liquidity aggregation engine
"""

__version__ = "1.0.0"
