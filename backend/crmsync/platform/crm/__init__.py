"""HTTP clients and OData helpers for the CRM web API."""
