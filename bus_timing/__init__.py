"""Singapore bus arrival lookup: secret-holding proxy, client and controller."""

__version__ = "1.0.0"
