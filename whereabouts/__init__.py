"""IP address management: IPAM configuration loading, in-memory IP pool listers and a controller releasing deleted pods' addresses."""

__version__ = "0.1.0"