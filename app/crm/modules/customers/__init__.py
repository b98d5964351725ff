"""Customers and customer-360."""
