"""Remote CRM boundary: HTTP client, entity specs, typed payloads and lookups.

Raw field dictionaries exist only inside this package; everything handed
to the pipelines is a typed pydantic payload.
"""
