"""Bidirectional synchronisation between local accounting data and the remote CRM.

Local changes flow out through the change queue and the outbound
pipeline; remote changes flow in through the pullers, which record
REMOTE entries on the same queue.
"""
