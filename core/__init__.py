"""
Core Package

Contains the venue-agnostic core of the exchange session:
- InstrumentRegistry: instrument metadata, price and size alignment
- OrderBook: per-market sorted ladders with checksum verification
- Ledger: balances and positions as authoritative value + temp-deltas
- WsSession: self-healing WebSocket with subscription scheduling and heartbeat
- ExchangeInterface / ExchangeManager: the venue session contract and registry
- Schemas: Pydantic models for instruments, snapshots and public data

Venue adapters under exchanges/ build on these pieces.
"""
