"""Daily cost report building and rendering."""
