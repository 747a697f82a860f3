"""Resilient batch execution core for syncing domain events into a CRM web API."""
