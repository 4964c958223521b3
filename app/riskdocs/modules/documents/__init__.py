"""
Assessment documents module (FRA / FSD / DSEAR).

Lifecycle:
- A document is a chain of versions sharing a base_document_id
- Each version moves draft -> issued -> superseded; only drafts are editable
- Issuing stores an immutable, hash-verified artifact before the status flips
- Revising an issued document derives a new draft; the issued version is never touched
- Lifecycle actions are recorded to the append-only audit trail
"""
