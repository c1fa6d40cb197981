"""
PixelMint generation core.

This package contains the orchestration and cost-control layer that sits
between the NFT art generator and third-party image generation services.
"""

from .core.config import Settings
from .core.orchestrator import Orchestrator, create_orchestrator

__version__ = "1.0.0"

__all__ = ["Orchestrator", "Settings", "create_orchestrator", "__version__"]
