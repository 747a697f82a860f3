"""Platform layer: batch execution, CRM clients and authentication."""
