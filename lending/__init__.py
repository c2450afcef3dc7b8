"""Library Lending - Core Application Package

This package contains the backend modules:
- HTTP API (api.py)
- Authentication and tokens (auth.py)
- Catalog queries (catalog.py)
- Borrow/return flow (borrowing.py)
- Database handle (database.py)
- Operator CLI (main.py)
"""

__version__ = "1.0.0"
