"""Boekenbaai - school library lending package

This package contains the core application modules including:
- Domain models (book.py, models.py)
- JSON document store (database.py)
- Lending and class management (library.py)
- History ledger (history.py)
- Bulk import reconciliation (importer.py)
- HTTP API (api.py) and CLI (cli.py)
"""
