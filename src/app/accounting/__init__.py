"""Locally mastered accounting entities and their repository.

The sync engine treats these tables as the local side of every
reconciliation pair: each synchronised row carries a global id, the
remote CRM id and the last pull timestamp.
"""
