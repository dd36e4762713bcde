"""
Live feed adapters: WebSocket clients, payload normalizers and the
Polymarket market catalog.
"""
