"""Outbound push pipeline: local accounting entities -> remote CRM."""
