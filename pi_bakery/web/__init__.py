"""HTTP surface for the bakeform inventory."""
