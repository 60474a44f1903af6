"""flashopt - off-chain pricing, settlement and recommendation engine.

This package is responsible for:
- Live price ingestion (Coinbase ticker websocket, reconnect with backoff)
- Volatility (EWMA) and short-window trend estimation
- Deterministic settlement against a versioned payout table
- One-trade-per-session lifecycle with timer-driven expiry
- Recommending trade parameters by estimated win probability
"""

__version__ = "0.1.0"
