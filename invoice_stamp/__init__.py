"""Chained compliance stamping for UBL e-invoices."""

__version__ = "0.1.0"
