"""
pulsescan - agent-side network discovery engine.
"""

__version__ = "1.0.0"

from pulsescan.modules import DiscoveredDevice, InvalidCIDRError, discover_devices

__all__ = ["DiscoveredDevice", "InvalidCIDRError", "discover_devices", "__version__"]
