"""HTTP surface of the signing gateway."""
