"""HTTP surface for the AI gateway."""
