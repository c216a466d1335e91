"""
Certificate issuance: request approval, numbering, issuance and the
post-issuance lifecycle (validity, invalidation, re-signing, regeneration).
"""
