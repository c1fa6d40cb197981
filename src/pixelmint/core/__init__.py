"""
Core components of PixelMint: configuration, logging, events and the orchestrator.
"""
