"""Orderflow API package. Routers are imported from their own modules."""
