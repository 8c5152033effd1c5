"""compliance-gateway: policy-engine backed compliance evaluation with an append-only audit log."""

__version__ = "0.1.0"
