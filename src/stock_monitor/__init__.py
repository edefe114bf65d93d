"""Restock and price-drop monitor for product pages."""
