"""Access tokens for the CRM web API."""
