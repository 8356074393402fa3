"""Backend package: document storage, media transforms, quota accounting, APIs.

This package ingests uploaded CV/letter/portfolio documents, compresses and
merges them, and exposes the helpers used to embed photos and signatures in
generated Office documents.
"""
