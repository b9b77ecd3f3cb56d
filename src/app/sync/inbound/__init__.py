"""Inbound pull pipeline: remote CRM -> local accounting entities."""
