"""
Exchange Connectors Package

This package contains one venue session per subfolder, each with:
- api_client.py: REST API logic
- ws_client.py: WebSocket channel protocol
- __init__.py: Main exchange class implementing ExchangeInterface

Available:
- okx: OKX spot and perpetual swaps
"""
