"""Gateway registry for breaking circular imports.

This module holds the gateway instance so that routes can import it
without causing circular imports with the main module.
"""

# Global gateway instance - set by main.py during initialization
gateway = None


def set_gateway(gateway_instance):
    """Set the global gateway instance."""
    global gateway
    gateway = gateway_instance


def get_gateway():
    """Get the global gateway instance."""
    if gateway is None:
        raise RuntimeError("Gateway not initialized. Did you call set_gateway?")
    return gateway
