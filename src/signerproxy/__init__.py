"""Signer proxy - JSON-RPC signing gateway for keys held in an HSM or KMS."""

__version__ = "0.1.0"
