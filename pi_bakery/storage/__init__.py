"""Raw disk image storage: mapping, mounting and the bakeform inventory."""
