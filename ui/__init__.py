"""Front-desk JSON API."""
