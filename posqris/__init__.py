"""QRIS payment reconciliation service for the restaurant POS."""
