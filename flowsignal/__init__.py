"""
flowsignal: streaming microstructure aggregation and on-demand signals
for crypto spot/perpetual markets.
"""

__version__ = "0.1.0"
