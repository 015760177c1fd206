"""
swingtrack - weekly swing-trading watchlist and trade simulation.

Modules:
- levels: entry/stop/target calculation per scan type
- status: tracking status and flag classification
- simulator: replayable trade simulation
- intraday: live-price reconciliation
- watchlist: weekly aggregate and week boundaries
- tracking: end-of-day tracking run
- market_data: Upstox client and rate limiter
- database: SQLite persistence
"""

__version__ = "0.1.0"
