"""Route email-originated edit requests to a pool of claim-holding workers."""

__version__ = "0.1.0"
