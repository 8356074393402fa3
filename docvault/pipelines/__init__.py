"""Request pipelines for document ingestion and document management.

Each pipeline receives its collaborators explicitly so it can be driven from
the HTTP layer as well as from scripts and tests.
"""
