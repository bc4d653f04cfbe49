"""polychat: multi-provider streaming chat core."""

__version__ = "0.3.0"
