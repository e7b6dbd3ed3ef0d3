"""Library Lending - Borrowing lifecycle package

This package contains the lending core and its surfaces:
- Borrowing policy, inventory ledger and lifecycle (policy.py, ledger.py, circulation.py)
- Data models and error taxonomy (models.py, errors.py)
- Storage layer (repository.py, database.py)
- API endpoints (api.py) and CLI interface (cli.py)
"""
