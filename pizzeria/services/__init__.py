"""Order and checkout services."""
