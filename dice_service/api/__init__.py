"""HTTP surface of the dice service."""
