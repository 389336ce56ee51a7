"""Outbound webhook delivery for CRM domain events."""
